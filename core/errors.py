"""
core/errors.py -- Exception taxonomy shared by every layer.

  ValidationError       malformed input (missing fields, length bounds). No retry.
  AuthenticationError   bad credentials or banned account. The message never
                        says whether the username or the password was wrong.
  UserExistsError       registration conflict, raised from the unique constraint.
  StoreUnavailable      connectivity or transaction failure. Transactions are
                        rolled back before this is raised.
  ConfigurationCorrupt  the persisted configuration document cannot be parsed.
                        ConfigService recovers by re-initializing.

The API layer maps these to HTTP status codes in one place (api/main.py).
"""


class TvCoreError(Exception):
    """Base class for all domain errors."""

    code = "error"


class ValidationError(TvCoreError):
    code = "validation_error"


class AuthenticationError(TvCoreError):
    code = "bad_credentials"

    def __init__(self, message: str = "Invalid username or password.") -> None:
        super().__init__(message)


class UserExistsError(TvCoreError):
    code = "conflict"

    def __init__(self, username: str) -> None:
        super().__init__("A user with that username already exists.")
        self.username = username


class StoreUnavailable(TvCoreError):
    code = "store_unavailable"


class ConfigurationCorrupt(TvCoreError):
    code = "configuration_corrupt"
