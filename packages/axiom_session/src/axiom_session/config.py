"""
Settings for the Axiom session layer, read from the environment.

`.env` files are loaded with python-dotenv before the environment is read,
so local development can keep credentials out of the shell.

```bash
# .env
AXIOM_EMAIL=user@example.com
AXIOM_PASSWORD=secure_password
INBOX_LV_EMAIL=user@inbox.lv
INBOX_LV_PASSWORD=mailbox_password
```
"""

import os
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from shared_lib.exceptions import ConfigurationError

from axiom_session.auth.storage import DEFAULT_SESSION_PATH
from axiom_session.urls import Region


# Environment variable -> settings field
ENV_VARS = {
    "AXIOM_EMAIL": "email",
    "AXIOM_PASSWORD": "password",
    "AXIOM_ACCESS_TOKEN": "access_token",
    "AXIOM_REFRESH_TOKEN": "refresh_token",
    "AXIOM_SESSION_PATH": "session_path",
    "AXIOM_ENCRYPT_SESSION": "encrypt_session",
    "AXIOM_AUTO_SAVE": "auto_save",
    "AXIOM_REGION": "region",
    "AXIOM_LOG_LEVEL": "log_level",
    "INBOX_LV_EMAIL": "otp_email",
    "INBOX_LV_PASSWORD": "otp_email_password",
    "AXIOM_OTP_TIMEOUT": "otp_timeout_seconds",
    "AXIOM_OTP_POLL_INTERVAL": "otp_poll_interval_seconds",
}


class AxiomSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str | None = None
    password: SecretStr | None = None
    access_token: SecretStr | None = None
    refresh_token: SecretStr | None = None

    session_path: Path = DEFAULT_SESSION_PATH
    encrypt_session: bool = False
    auto_save: bool = True

    region: Region = Region.GLOBAL
    log_level: str = "INFO"

    otp_email: str | None = None
    otp_email_password: SecretStr | None = None
    otp_timeout_seconds: float = Field(default=120, gt=0)
    otp_poll_interval_seconds: float = Field(default=5, gt=0)

    # Global limit across all endpoints, plus the default per-endpoint limit
    global_max_requests: int = Field(default=300, gt=0)
    global_window_seconds: float = Field(default=60, gt=0)
    endpoint_max_requests: int = Field(default=100, gt=0)
    endpoint_window_seconds: float = Field(default=60, gt=0)

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    @property
    def has_otp_mailbox(self) -> bool:
        return bool(self.otp_email and self.otp_email_password)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "AxiomSettings":
        """
        Build settings from environment-style variables.

        Empty values are ignored.

        ## Raises:
        - `ConfigurationError`: If a value cannot be parsed
        """
        data = {
            field: values[var] for var, field in ENV_VARS.items() if values.get(var)
        }
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


def from_env(env_file: str | Path | None = None) -> AxiomSettings:
    """
    Load `.env` (if present) and read settings from the environment.

    Variables already set in the environment take precedence over `.env`.
    """
    load_dotenv(dotenv_path=env_file)
    return AxiomSettings.from_mapping(os.environ)
