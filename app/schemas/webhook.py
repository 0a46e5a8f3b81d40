from typing import Any
from uuid import UUID

from pydantic import BaseModel, model_validator


class ProviderWebhook(BaseModel):
    """ElevenLabs conversation webhook.

    Post-call webhooks wrap the conversation in ``data``; older call events
    send it flat. Both shapes are accepted and flattened here.
    """

    type: str = ""
    conversation_id: str | None = None
    call_id: str | None = None
    status: str | None = None
    conversation_initiation_metadata: dict | None = None
    conversation_initiation_client_data: dict | None = None
    transcript: Any = None
    analysis: dict | None = None
    metadata: dict | None = None
    error: Any = None

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def unwrap_envelope(cls, data):
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            inner = data["data"]
            return {**inner, "type": data.get("type") or inner.get("type", "")}
        return data

    @property
    def screening_id(self) -> UUID | None:
        sources = [
            (self.conversation_initiation_metadata or {}).get("custom_data"),
            (self.conversation_initiation_client_data or {}).get("dynamic_variables"),
        ]
        for source in sources:
            if not isinstance(source, dict):
                continue
            value = source.get("screening_id") or source.get("screen_id")
            if value:
                try:
                    return UUID(str(value))
                except ValueError:
                    return None
        return None

    def conversation(self) -> dict:
        return {
            "status": self.status,
            "transcript": self.transcript,
            "analysis": self.analysis or {},
            "metadata": self.metadata or {},
        }
