"""Error taxonomy for Bannerlease.

Validation and state-conflict errors are surfaced to the caller that triggered
them. Transient errors (render, asset, fingerprint) are caught at the
per-rental verification boundary. Credential and activation errors are fatal
for a single activation only.
"""


class RentalError(Exception):
    """Base error surfaced synchronously with a machine-readable code."""

    status_code = 400

    def __init__(self, message: str, code: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class RentalValidationError(RentalError):
    """Bad input rejected at the boundary, never persisted."""

    status_code = 400


class RentalNotFoundError(RentalError):
    status_code = 404


class RentalStateConflict(RentalError):
    """Transition not allowed from the rental's current state."""

    status_code = 409


class RenderError(Exception):
    """The profile page could not be rendered."""


class AssetError(Exception):
    """The advertisement asset could not be loaded."""


class FingerprintError(Exception):
    """An image could not be decoded, cropped or fingerprinted."""


class CredentialError(Exception):
    """Stored account credentials are missing, unusable or undecryptable."""


class ActivationError(Exception):
    """Publishing the ad to the profile banner failed."""


class OAuthStateError(Exception):
    """An OAuth callback referenced unknown or expired handshake state."""
