class VoucherShopError(Exception):
    pass


class InvalidCallback(VoucherShopError):
    """Callback payload that cannot be turned into a CallbackEvent."""


class InvalidSignature(VoucherShopError):
    pass


class AllocationError(VoucherShopError):
    """Claim succeeded but binding failed; the claim has been released."""

    def __init__(self, message: str, voucher_code: str | None = None):
        super().__init__(message)
        self.voucher_code = voucher_code


class StrandedVoucher(AllocationError):
    """The compensating release itself failed; needs manual repair."""
