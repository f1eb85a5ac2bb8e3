"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..streaming.types import StreamConfig
from .api import ClientSettings

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".chapterstream"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_TOKEN_FIELD = "api_token_ciphertext"
_FERNET_PREFIX = "fernet"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _env_int(value: str) -> int:
    return int(value, 10)


# Environment variable -> (settings field, parser).
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "CHAPTERSTREAM_BASE_URL": ("base_url", str),
    "CHAPTERSTREAM_API_TOKEN": ("api_token", str),
    "CHAPTERSTREAM_REPHRASE_STYLE": ("default_rephrase_style", str),
    "CHAPTERSTREAM_DEBUG_LOGGING": ("debug_logging", _env_bool),
    "CHAPTERSTREAM_REQUEST_TIMEOUT": ("request_timeout", float),
    "CHAPTERSTREAM_PAPER_POLL_INTERVAL": ("paper_poll_interval", float),
    "CHAPTERSTREAM_MAX_RETRIES": ("max_retries", _env_int),
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "http://localhost:8000"
    api_token: str = ""
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False
    paper_poll_interval: float = 5.0
    paper_poll_max_attempts: int = 120
    default_rephrase_style: str = "Academic Formal"
    stream: dict[str, Any] = field(default_factory=dict)
    last_project: str | None = None

    def stream_config(self) -> StreamConfig:
        """Return the stream tunables with ``stream`` overrides applied."""

        return StreamConfig.merged(self.stream)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_token=self.api_token,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )


class SettingsStore:
    """Reads and writes ``settings.json``, keeping the API token encrypted."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the stored settings with CLI ``overrides`` and ``CHAPTERSTREAM_*`` variables applied.

        Files written by older versions, or holding a plaintext token, are
        rewritten in the current format.
        """

        settings, outdated = self._from_payload(self._read_payload())
        if outdated:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Could not upgrade %s: %s", self._path, exc)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        payload = asdict(settings)
        token = payload.pop("api_token") or ""
        if token:
            payload[_TOKEN_FIELD] = self._vault.encrypt(token)
        payload["version"] = _SETTINGS_VERSION
        _atomic_write(self._path, json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))
        LOGGER.debug("Settings written to %s", self._path)
        return self._path

    def _from_payload(self, payload: Dict[str, Any]) -> tuple[Settings, bool]:
        if not payload:
            return Settings(), False
        token, plaintext = self._decrypt_token(payload.pop(_TOKEN_FIELD, None), payload.pop("api_token", None))
        known = {item.name for item in fields(Settings)} - {"api_token"}
        ignored = sorted(set(payload) - known - {"version"})
        if ignored:
            LOGGER.debug("Ignoring unknown settings keys: %s", ignored)
        try:
            settings = Settings(**{key: value for key, value in payload.items() if key in known})
        except TypeError as exc:
            LOGGER.warning("Discarding malformed settings in %s: %s", self._path, exc)
            settings = Settings()
        if token:
            settings = replace(settings, api_token=token)
        return settings, plaintext or payload.get("version") != _SETTINGS_VERSION

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        if isinstance(payload, dict):
            return payload
        LOGGER.warning("Ignoring settings file %s: expected an object, got %s", self._path, type(payload).__name__)
        return {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        known = {item.name for item in fields(Settings)}
        changes = {key: value for key, value in overrides.items() if key in known}
        stream = changes.get("stream")
        if isinstance(stream, Mapping):
            changes["stream"] = {**settings.stream, **stream}
        if not changes:
            return settings
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(changes))
        return replace(settings, **changes)

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                overrides[field_name] = parse(raw)
            except ValueError:
                LOGGER.warning("Ignoring invalid environment override %s=%r", env_name, raw)
        return self._apply_overrides(settings, overrides, source="environment")

    def _decrypt_token(self, ciphertext: str | None, plaintext: str | None) -> tuple[str, bool]:
        """Return the API token and whether it was stored unencrypted."""

        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("API token could not be decrypted and was dropped: %s", exc)
                return "", False
        if plaintext:
            LOGGER.info("Encrypting API token previously stored as plaintext")
            return plaintext, True
        return "", False


class SecretVault:
    """Fernet encryption for the API token; the key file is created on first use."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        sealed = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{_FERNET_PREFIX}:{sealed}"

    def decrypt(self, token: str | None) -> str:
        """Reverse :meth:`encrypt`.

        Raises:
            ValueError: The token has an unknown prefix or was sealed with another key.
        """

        if not token:
            return ""
        prefix, _, sealed = token.partition(":")
        if prefix != _FERNET_PREFIX or not sealed:
            raise ValueError(f"Unsupported secret format {prefix!r}")
        try:
            return self._cipher().decrypt(sealed.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError(f"Secret does not match the key in {self._key_path}") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                _atomic_write(self._key_path, key, private=True)
            self._fernet = Fernet(key)
        return self._fernet


def _atomic_write(path: Path, data: bytes, *, private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f"{path.name}.partial")
    staging.write_bytes(data)
    if private and os.name != "nt":  # pragma: no cover - POSIX permissions
        staging.chmod(0o600)
    staging.replace(path)


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of ``value``."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]
