from typing import Optional


class WalletError(Exception):
    msg: str

    def __init__(self, msg):
        super().__init__(msg)
        self.msg = msg


class NoActiveKeysetError(WalletError):
    msg = "No active keyset found"

    def __init__(self, unit: Optional[str] = None):
        super().__init__(f"{self.msg} for unit {unit}" if unit else self.msg)


class RestoreMismatchError(WalletError):
    msg = "Mint did not return signatures for all outputs"

    def __init__(self, expected: int, restored: int):
        super().__init__(f"{self.msg}: expected {expected}, restored {restored}")
        self.expected = expected
        self.restored = restored


class SubscriptionError(WalletError):
    msg = "Websocket subscription failed"

    def __init__(self, msg: Optional[str] = None):
        super().__init__(msg or self.msg)
