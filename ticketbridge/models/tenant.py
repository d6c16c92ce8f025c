"""Tenant models for multi-tenancy support."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Settings keys used by earlier deployments, mapped to their current names
LEGACY_SETTING_KEYS = {
    "closingMessage": "closeMessage",
    "reopenTicketMessage": "reopenMessage",
    "vouchMessage": "feedbackMessage",
    "vouchEnabled": "feedbackEnabled",
}


class TenantSettings(BaseModel):
    """Per-tenant message templates and feature toggles.

    Persisted as a flat camelCase map. Keys this model does not know are kept
    as extras so that saving never drops them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    # Templates
    welcome_message: str = (
        "Welcome to Support! 😊 We're here to help. What's your name so we can get you connected?"
    )
    intro_message: str = (
        "Nice to meet you, {name}! 😊 I'm setting up your support ticket right now. "
        "Our team will be with you soon to help with your request!"
    )
    reopen_message: str = "Welcome back, {name}! 👋 Our team will continue assisting you with your request."
    new_ticket_message: str = (
        "# 📋 New Support Ticket\n"
        "**A new ticket has been created for {name}**\n"
        "WhatsApp: `{phoneNumber}`\n\n"
        "Support agents will respond as soon as possible."
    )
    close_message: str = (
        "Thank you for contacting support. Your ticket is now being closed and a transcript will be saved."
    )
    feedback_message: str = (
        "Thank you for choosing us, {name}! We'd love to hear about your experience. "
        "Reply here to leave feedback."
    )

    # Feature toggles
    send_closing_message: bool = True
    transcripts_enabled: bool = True
    feedback_enabled: bool = True

    def render(self, template: str, name: str | None = None, phone_number: str | None = None) -> str:
        """Render a template field with {name} and {phoneNumber} substituted.

        Args:
            template: Field name, e.g. "intro_message"
            name: Contact display name
            phone_number: Normalized conversation id

        Returns:
            The rendered text
        """
        text = getattr(self, template)
        return text.replace("{name}", name or "there").replace("{phoneNumber}", phone_number or "")

    def merged(self, patch: dict[str, Any]) -> "TenantSettings":
        """Return a new settings object with ``patch`` applied on top."""
        data = self.model_dump(by_alias=True)
        data.update(patch)
        return TenantSettings.model_validate(data)


class Tenant(BaseModel):
    """One collaboration workspace paired with one messaging identity."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str = Field(..., description="Stable tenant identifier, equal to the workspace id")
    workspace_id: str = Field(..., description="Collaboration platform workspace (guild) id")
    ticket_category_id: str = Field(..., description="Category new ticket channels are created under")
    transcript_channel_id: str | None = None
    feedback_channel_id: str | None = None
    settings: TenantSettings = Field(default_factory=TenantSettings)

    created_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_legacy(cls, guild_id: str, entry: dict[str, Any]) -> "Tenant":
        """Build a tenant from an ``instance_configs.json`` entry.

        Args:
            guild_id: Key of the entry in the legacy file
            entry: Legacy record with guildId/categoryId/transcriptChannelId/
                vouchChannelId/customSettings

        Returns:
            Tenant with legacy settings keys renamed
        """
        workspace_id = str(entry.get("guildId") or guild_id)
        custom = {
            LEGACY_SETTING_KEYS.get(key, key): value
            for key, value in (entry.get("customSettings") or {}).items()
        }
        return cls(
            tenant_id=workspace_id,
            workspace_id=workspace_id,
            ticket_category_id=str(entry["categoryId"]),
            transcript_channel_id=entry.get("transcriptChannelId"),
            feedback_channel_id=entry.get("vouchChannelId"),
            settings=TenantSettings.model_validate(custom),
        )
