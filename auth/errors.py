"""
auth/errors.py -- Exceptions raised by the user and role directories.

Lookups never raise: a missing record is None. These exceptions cover the
write paths where a uniqueness rule rejects the request. Routes map every
DirectoryError subclass to HTTP 409.
"""


class DirectoryError(Exception):
    """Base class for user/role directory write failures."""


class DuplicateUsername(DirectoryError):
    def __init__(self, username: str) -> None:
        super().__init__(f"Username already taken: {username!r}")
        self.username = username


class DuplicateEmail(DirectoryError):
    def __init__(self, email: str) -> None:
        super().__init__(f"Email already registered: {email!r}")
        self.email = email


class DuplicateRole(DirectoryError):
    def __init__(self, role_name: str) -> None:
        super().__init__(f"Role already exists: {role_name!r}")
        self.role_name = role_name
