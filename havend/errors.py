"""Error taxonomy shared by every hub component.

Each error carries a machine ``code``. Errors marked ``explained`` are
business-rule outcomes and are reported to the caller with their text;
the rest are rejected with a bare ``rejected`` code so authorization and
validation failures do not leak why they failed.
"""

from __future__ import annotations


class HubError(Exception):
    code = "error"
    explained = False

    def __init__(self, text: str = "") -> None:
        super().__init__(text or self.code)
        self.text = text or self.code


class Unauthenticated(HubError):
    code = "unauthenticated"


class Forbidden(HubError):
    code = "forbidden"


class UnknownCommand(HubError):
    code = "unknown"


class AuthFailed(HubError):
    code = "auth_failed"


class InvalidInput(HubError):
    code = "invalid_input"


class Conflict(HubError):
    code = "conflict"
    explained = True


class NotFound(HubError):
    code = "not_found"
    explained = True


class InvalidOperation(HubError):
    code = "invalid_operation"
    explained = True


class StorageError(HubError):
    code = "storage"
    explained = True

    def __init__(self, text: str = "") -> None:
        super().__init__(text or "storage failure")


class DuplicateKeyError(StorageError):
    code = "duplicate"
