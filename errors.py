"""
Error types raised by the record store, identity provider and portal.

main.py maps each of them onto an HTTP status.
"""


class GradeBookError(Exception):
    pass


class StoreUnavailable(GradeBookError, RuntimeError):
    pass


class RecordNotFound(GradeBookError):
    def __init__(self, key: str):
        super().__init__(f"Record not found: {key}")
        self.key = key


class RecordExists(GradeBookError):
    def __init__(self, key: str):
        super().__init__(f"Record already exists: {key}")
        self.key = key


class IdentityExists(GradeBookError):
    pass


class IdentityNotFound(GradeBookError):
    pass


class WrongSecret(GradeBookError):
    pass


class InvalidIdentityInput(GradeBookError):
    pass


class InvalidTransition(GradeBookError):
    pass
