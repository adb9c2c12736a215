"""钱包引擎的异常分类。"""

from typing import List, Optional, Tuple


class WalletError(Exception):
    """所有引擎异常的基类。"""

    # 可供界面层区分的稳定错误码
    code = "WALLET_ERROR"


class InvalidMnemonicError(WalletError):
    code = "INVALID_MNEMONIC"


class InvalidAddressError(WalletError):
    code = "INVALID_ADDRESS"


class InsufficientFundsError(WalletError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required: int, available: int, message: Optional[str] = None) -> None:
        self.required = required
        self.available = available
        super().__init__(message or f"余额不足：需要 {required}，可用 {available}")


class DustAmountError(WalletError):
    code = "DUST_AMOUNT"


class ProviderUnavailableError(WalletError):
    """有序服务商列表全部失败。failures 记录 (服务商, 原因)。"""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, operation: str, failures: Optional[List[Tuple[str, str]]] = None) -> None:
        self.operation = operation
        self.failures = list(failures or [])
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures)
        super().__init__(f"{operation} 所有服务商均不可用" + (f" ({detail})" if detail else ""))


class RateLimitedError(ProviderUnavailableError):
    """所有服务商都处于限流状态。"""

    code = "RATE_LIMITED"


class SigningError(WalletError):
    code = "SIGNING_FAILED"


class BroadcastError(WalletError):
    code = "BROADCAST_FAILED"

    def __init__(self, message: str, failures: Optional[List[Tuple[str, str]]] = None) -> None:
        self.failures = list(failures or [])
        super().__init__(message)


class RequestTimeoutError(WalletError, TimeoutError):
    code = "TIMEOUT"


class InvalidStateError(WalletError):
    code = "INVALID_STATE"
