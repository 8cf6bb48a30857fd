"""
Configuration.

The parameters file names what to upload and where::

    {
        "storageConnectionString": "<storage connection string>",
        "containerName": "<storage container name>",
        "sourceFile": "<source file full path>"
    }

Tuning knobs come from the environment (or a ``.env`` file).
"""

import base64
import binascii
import json
import os
import re
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from azblob_upload.blocks import DEFAULT_BLOCK_SIZE, MAX_BLOCK_SIZE
from azblob_upload.errors import ConfigError

_DEFAULTS = {
    "BLOCK_SIZE_MB": DEFAULT_BLOCK_SIZE // (1024 * 1024),
    "CONCURRENCY": 1,

    "MAX_RETRIES": 3,
    "RETRY_BASE_DELAY": 2,
    "CONNECTION_TIMEOUT": 30,
    "READ_TIMEOUT": 120,
}

_PORTAL_HINT = "Copy a fresh connection string from Azure Portal → Storage account → Access keys."
_ACCOUNT_NAME = re.compile(r"[a-z0-9]{3,24}")


def _env_int(name: str) -> int:
    raw = os.getenv(name, str(_DEFAULTS[name]))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer. Got {raw!r}.")


class Config:
    def __init__(
        self,
        conn_str: str,
        container_name: str,
        source_file: Path,
        block_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[int] = None,
        connection_timeout: Optional[int] = None,
        read_timeout: Optional[int] = None,
        log_path: Optional[str] = None,
    ) -> None:
        self.conn_str = conn_str
        self.container_name = container_name
        self.source_file = Path(source_file)
        self.block_size: int = (
            block_size if block_size is not None else _env_int("BLOCK_SIZE_MB") * 1024 * 1024
        )
        self.concurrency: int = concurrency if concurrency is not None else _env_int("CONCURRENCY")
        self.max_retries: int = max_retries if max_retries is not None else _env_int("MAX_RETRIES")
        self.retry_base_delay: int = (
            retry_base_delay if retry_base_delay is not None else _env_int("RETRY_BASE_DELAY")
        )
        self.connection_timeout: int = (
            connection_timeout if connection_timeout is not None else _env_int("CONNECTION_TIMEOUT")
        )
        self.read_timeout: int = read_timeout if read_timeout is not None else _env_int("READ_TIMEOUT")
        self.log_path: Optional[str] = log_path or os.getenv("LOG_PATH")

    @classmethod
    def load(cls, parameters_file: Path, **overrides) -> "Config":
        """Read the parameters file and the environment, then validate."""
        load_dotenv(find_dotenv(usecwd=True))

        parameters_file = Path(parameters_file)
        if not parameters_file.is_file():
            raise ConfigError(f"Invalid parameters file path: {parameters_file}")
        try:
            with parameters_file.open("r", encoding="utf-8") as fh:
                params = json.load(fh)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read parameters file {parameters_file}: {exc}") from exc
        if not isinstance(params, dict):
            raise ConfigError(f"Parameters file {parameters_file} must hold a JSON object.")

        fields = ("storageConnectionString", "containerName", "sourceFile")
        missing = [key for key in fields if key not in params or params[key] in ("", None)]
        if missing:
            raise ConfigError(f"Parameters file is missing: {', '.join(missing)}")
        for key in fields:
            if not isinstance(params[key], str) or not params[key].strip():
                raise ConfigError(
                    f"Parameters file field {key} must be a non-empty string. Got {params[key]!r}."
                )

        cfg = cls(
            conn_str=params["storageConnectionString"],
            container_name=params["containerName"],
            source_file=Path(params["sourceFile"]).expanduser(),
            **overrides,
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        # Validate the connection string and account key before anything else
        self._validate_connection_string()

        if not self.source_file.is_file():
            raise ConfigError(f"Source file not found: {self.source_file}")

        # Azure max block size is 4000 MiB
        if self.block_size > MAX_BLOCK_SIZE:
            raise ConfigError(
                f"BLOCK_SIZE_MB exceeds Azure maximum (4000 MB). Got {self.block_size // (1024*1024)} MB."
            )
        if self.block_size < 1024 * 1024:
            raise ConfigError("BLOCK_SIZE_MB must be at least 1 MB.")
        if self.concurrency < 1:
            raise ConfigError("CONCURRENCY must be at least 1.")
        if self.max_retries < 0:
            raise ConfigError("MAX_RETRIES must not be negative.")

    def _validate_connection_string(self) -> None:
        """Check the pieces of the connection string before connecting."""
        parts = {}
        for segment in filter(None, (s.strip() for s in self.conn_str.split(";"))):
            key, sep, value = segment.partition("=")
            if not sep:
                raise ConfigError(
                    f"Malformed storageConnectionString: segment '{segment}' has no '=' separator.\n"
                    + _PORTAL_HINT
                )
            parts[key.strip()] = value.strip()

        missing = [k for k in ("DefaultEndpointsProtocol", "AccountName", "AccountKey") if not parts.get(k)]
        if missing:
            raise ConfigError(
                f"storageConnectionString is missing: {', '.join(missing)}.\n" + _PORTAL_HINT
            )

        if not _ACCOUNT_NAME.fullmatch(parts["AccountName"]):
            raise ConfigError(
                f"storageConnectionString AccountName {parts['AccountName']!r} is not a storage "
                "account name (3-24 lowercase letters and digits)."
            )

        # account keys are 64 random bytes in base64
        try:
            decoded = base64.b64decode(parts["AccountKey"], validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) != 64:
            raise ConfigError(
                "storageConnectionString AccountKey is not a 64-byte base64 key, "
                "it is corrupted or truncated.\n" + _PORTAL_HINT
            )

        if parts["DefaultEndpointsProtocol"].lower() != "https":
            raise ConfigError(
                "storageConnectionString uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
            )

    @property
    def blob_name(self) -> str:
        return self.source_file.name
