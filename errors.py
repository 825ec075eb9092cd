class NotFoundError(ValueError):
    pass


class InsufficientFundsError(ValueError):
    pass


class InvalidTransferError(ValueError):
    pass


class CoreModuleError(ValueError):
    pass


class UnknownModuleError(NotFoundError):
    pass


class OutOfStockError(ValueError):
    pass


class DownloadLimitError(ValueError):
    pass


class AuthorizationError(PermissionError):
    pass


class SmartInputError(ValueError):
    pass
