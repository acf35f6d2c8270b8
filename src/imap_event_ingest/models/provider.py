"""Provider configuration models."""

from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field, SecretStr, field_serializer, model_validator

from imap_event_ingest.models.base import AppModel
from imap_event_ingest.models.types import ProviderStatus


class ImapAuth(AppModel):
    """Credentials for an IMAP login (password or OAuth2 access token)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user: str = Field(min_length=1)
    password: SecretStr | None = Field(default=None, alias="pass")
    access_token: SecretStr | None = Field(default=None, alias="accessToken")

    @model_validator(mode="after")
    def _require_secret(self) -> ImapAuth:
        """Ensure at least one way of authenticating is configured.

        Raises:
            ValueError: If neither a password nor an access token is present.
        """
        if self.password is None and self.access_token is None:
            raise ValueError("IMAP auth needs either 'pass' or 'accessToken'")
        return self

    @field_serializer("password", "access_token", when_used="json")
    def _dump_secret(self, value: SecretStr | None) -> str | None:
        """Write secrets back in clear text when the config is persisted."""
        return value.get_secret_value() if value is not None else None


class ImapConfig(AppModel):
    """IMAP protocol settings for one provider."""

    model_config = ConfigDict(extra="allow")

    host: str = Field(min_length=1)
    port: int = Field(default=993, ge=1, le=65535)
    secure: bool = True
    auth: ImapAuth
    mailbox: str = "INBOX"


class RuntimeConfig(AppModel):
    """Worker-owned runtime section of a provider config."""

    model_config = ConfigDict(extra="allow")

    cursor: int | None = Field(default=None, ge=0)


class ProviderConfig(AppModel):
    """Provider config; keys other than ``imap`` and ``runtime`` are kept verbatim."""

    model_config = ConfigDict(extra="allow")

    imap: ImapConfig | None = None
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


class Provider(AppModel):
    """A mailbox-backed source of events."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    category: str = "email"
    status: ProviderStatus = ProviderStatus.draft
    trusted: bool = False
    config: ProviderConfig = Field(default_factory=ProviderConfig)

    @property
    def mailbox(self) -> str:
        """Return the configured mailbox name, defaulting to INBOX."""
        imap = self.config.imap
        return imap.mailbox if imap is not None and imap.mailbox else "INBOX"

    def config_dump(self) -> dict[str, Any]:
        """Serialize the config for storage, keeping the original key aliases."""
        return self.config.model_dump(mode="json", by_alias=True, exclude_none=False)
