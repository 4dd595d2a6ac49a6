"""Exception taxonomy for preflight and resource failures.

Step failures inside a lifecycle operation are not exceptions; they are
reported through ``model.Outcome``.
"""


class TpmLuksError(RuntimeError):
    """Base class for errors that abort before any key slot is touched."""


class ConfigError(TpmLuksError):
    """Invalid slot, selector, or device configuration."""


class PrivilegeError(TpmLuksError):
    """The tool is not running as root."""


class KeyStoreError(TpmLuksError):
    """The volatile key store could not be created or mounted."""


class LockError(TpmLuksError):
    """Another instance holds the lock."""


class CredentialError(TpmLuksError):
    """A passphrase could not be collected from the operator."""


class KeyGenerationError(TpmLuksError):
    """Fresh key material could not be produced."""
