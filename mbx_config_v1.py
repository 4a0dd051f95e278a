"""
Marbles Exchange (MBX) - Configuration
Version: 1.0.0

Runtime settings for the marble chaincode, the payment verifier and the
HTTP host. Defaults target the Stellar testnet.
"""

from dataclasses import dataclass
from typing import Dict, Optional
import os

# ============================================
# DEFAULTS
# ============================================

DEFAULT_HORIZON_BASE_URL = "https://horizon-testnet.stellar.org"
DEFAULT_HORIZON_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ARGUMENT_LENGTH = 32
DEFAULT_DECISION_SECRET = "MBX_DECISION_SECRET_ROTATE_QUARTERLY"
DEFAULT_DECISION_LEDGER_SIZE = 10000

ENV_PREFIX = "MBX_"

# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MarblesConfig:
    """Settings shared by every MBX component."""
    horizon_base_url: str = DEFAULT_HORIZON_BASE_URL
    horizon_timeout_seconds: float = DEFAULT_HORIZON_TIMEOUT_SECONDS
    max_argument_length: int = DEFAULT_MAX_ARGUMENT_LENGTH
    decision_secret: str = DEFAULT_DECISION_SECRET
    decision_ledger_size: int = DEFAULT_DECISION_LEDGER_SIZE
    log_level: str = "INFO"

    def __post_init__(self):
        self.horizon_base_url = self.horizon_base_url.rstrip("/")

        if self.horizon_timeout_seconds <= 0:
            raise ValueError(f"horizon_timeout_seconds must be positive: {self.horizon_timeout_seconds}")
        if self.max_argument_length < 1:
            raise ValueError(f"max_argument_length must be >= 1: {self.max_argument_length}")
        if self.decision_ledger_size < 1:
            raise ValueError(f"decision_ledger_size must be >= 1: {self.decision_ledger_size}")

    @property
    def decision_secret_bytes(self) -> bytes:
        return self.decision_secret.encode()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "MarblesConfig":
        """
        Build config from MBX_* environment variables.

        Recognised: MBX_HORIZON_BASE_URL, MBX_HORIZON_TIMEOUT_SECONDS,
        MBX_MAX_ARGUMENT_LENGTH, MBX_DECISION_SECRET, MBX_DECISION_LEDGER_SIZE,
        MBX_LOG_LEVEL.
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        kwargs = {}

        if _get("HORIZON_BASE_URL"):
            kwargs['horizon_base_url'] = _get("HORIZON_BASE_URL")
        if _get("HORIZON_TIMEOUT_SECONDS"):
            kwargs['horizon_timeout_seconds'] = float(_get("HORIZON_TIMEOUT_SECONDS"))
        if _get("MAX_ARGUMENT_LENGTH"):
            kwargs['max_argument_length'] = int(_get("MAX_ARGUMENT_LENGTH"))
        if _get("DECISION_SECRET"):
            kwargs['decision_secret'] = _get("DECISION_SECRET")
        if _get("DECISION_LEDGER_SIZE"):
            kwargs['decision_ledger_size'] = int(_get("DECISION_LEDGER_SIZE"))
        if _get("LOG_LEVEL"):
            kwargs['log_level'] = _get("LOG_LEVEL").upper()

        return cls(**kwargs)

    def to_dict(self) -> Dict:
        """Serialize without the signing secret."""
        return {
            'horizon_base_url': self.horizon_base_url,
            'horizon_timeout_seconds': self.horizon_timeout_seconds,
            'max_argument_length': self.max_argument_length,
            'decision_ledger_size': self.decision_ledger_size,
            'log_level': self.log_level
        }
