import pytest

from vouchershop.load_vouchers import load, read_voucher_csv
from vouchershop.model.inventory import InventoryStore


def write(tmp_path, text):
    p = tmp_path / "codes.csv"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_read_voucher_csv(tmp_path):
    path = write(tmp_path, (
        "code,product_name,amount,discounted_amount\n"
        "A-1,Tea,10000,\n"
        ",Tea,10000,\n"
        "A-2,Tea,12000,9000\n"
    ))
    rows = read_voucher_csv(path)
    assert [r["code"] for r in rows] == ["A-1", "A-2"]
    assert rows[0]["discounted_amount"] is None
    assert rows[1]["discounted_amount"] == 9000


def test_read_voucher_csv_errors(tmp_path):
    with pytest.raises(ValueError):
        read_voucher_csv(write(tmp_path, "code,amount\nA-1,1\n"))
    with pytest.raises(ValueError):
        read_voucher_csv(
            write(tmp_path, "code,product_name,amount\nA-1,Tea,lots\n")
        )


async def test_load_is_rerunnable(tmp_path, db):
    path = write(tmp_path, "code,product_name,amount\nA-1,Tea,1\nA-2,Tea,1\n")
    url = f"sqlite:///{tmp_path}/vouchers.db"
    assert await load(path, url) == 2
    assert await load(path, url) == 0

    _, SessionAsync, gated = db
    async with SessionAsync() as s:
        assert await InventoryStore(db=s, gated=gated).count_available(
            "Tea"
        ) == 2
