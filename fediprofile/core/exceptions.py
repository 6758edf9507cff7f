"""
Error types shared by the federation engine
"""

from typing import Optional


class TenantValidationError(ValueError):
    """Rejected tenant registration input"""


class ReservedSlugError(TenantValidationError):
    def __init__(self, slug: str):
        super().__init__(f"'{slug}' is a reserved name and cannot be used as a profile slug.")
        self.slug = slug


class DuplicateIdentityError(TenantValidationError):
    def __init__(self, user: str, server: str, slug: str):
        super().__init__(f"Mastodon account {user}@{server} is already registered as '{slug}'.")
        self.user = user
        self.server = server
        self.slug = slug


class DeliveryError(Exception):
    """Outbound request failed (transport error or non-2xx)"""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class VerificationError(Exception):
    """There was an error with verifying the signature"""


class VerificationFormatError(VerificationError):
    """There was an error with the format of the signature (not if it is valid)"""


class AppRegistrationError(RuntimeError):
    """Remote OAuth app registration failed"""
