"""ElevenLabs Conversational AI client used by the call workers.

Stateless request/response wrapper: it places outbound calls and fetches
conversations, and translates HTTP failures into the error taxonomy the
workers act on (not found, rate limited, transient vs. permanent).
"""

import httpx
import structlog

from app.core.config import get_settings

logger = structlog.get_logger()

# Provider conversation states that mean the call has not finished yet.
ACTIVE_CONVERSATION_STATUSES = (
    "initiated",
    "in-progress",
    "in_progress",
    "active",
    "ongoing",
    "processing",
)


class CallProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None, transient: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class ConversationNotFound(CallProviderError):
    def __init__(self, session_id: str):
        super().__init__(
            f"Conversation not found: {session_id}", status_code=404, transient=False
        )
        self.session_id = session_id


class ProviderRateLimited(CallProviderError):
    def __init__(self, retry_after: str | None = None):
        super().__init__("Provider rate limit exceeded", status_code=429, transient=True)
        self.retry_after = retry_after


def _is_transient(status_code: int) -> bool:
    return status_code >= 500 or status_code in (408, 429)


class CallProviderClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io",
        agent_phone_number_id: str = "",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.agent_phone_number_id = agent_phone_number_id
        self._client = httpx.Client(
            base_url=base_url,
            headers={"xi-api-key": api_key},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def initiate_call(
        self,
        agent_id: str,
        phone_number: str,
        metadata: dict | None = None,
        first_message: str | None = None,
    ) -> str:
        """Place an outbound call and return the provider conversation id."""
        client_data: dict = {
            "dynamic_variables": {key: str(value) for key, value in (metadata or {}).items()},
        }
        if first_message:
            client_data["conversation_config_override"] = {
                "agent": {"first_message": first_message},
            }

        response = self._request(
            "POST",
            "/v1/convai/twilio/outbound-call",
            json={
                "agent_id": agent_id,
                "agent_phone_number_id": self.agent_phone_number_id,
                "to_number": phone_number,
                "conversation_initiation_client_data": client_data,
            },
        )
        data = response.json()
        session_id = data.get("conversation_id") or data.get("session_id") or data.get("id")
        if not session_id:
            raise CallProviderError(
                "Provider response did not include a conversation id",
                status_code=response.status_code,
            )
        return session_id

    def get_conversation(self, session_id: str) -> dict:
        response = self._request(
            "GET", f"/v1/convai/conversations/{session_id}", session_id=session_id
        )
        return response.json()

    def _request(self, method: str, path: str, session_id: str | None = None, **kwargs):
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise CallProviderError(f"Timeout calling provider: {e}") from e
        except httpx.RequestError as e:
            raise CallProviderError(f"Error connecting to provider: {e}") from e

        if response.status_code == 404 and session_id:
            raise ConversationNotFound(session_id)
        if response.status_code == 429:
            raise ProviderRateLimited(retry_after=response.headers.get("retry-after"))
        if response.status_code >= 400:
            logger.error(
                "provider_api_error",
                method=method,
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise CallProviderError(
                f"Provider API error: {response.status_code}",
                status_code=response.status_code,
                transient=_is_transient(response.status_code),
            )
        return response


def get_call_provider() -> CallProviderClient:
    settings = get_settings()
    if not settings.ELEVENLABS_API_KEY:
        raise CallProviderError("ELEVENLABS_API_KEY not configured", transient=False)
    return CallProviderClient(
        api_key=settings.ELEVENLABS_API_KEY,
        base_url=settings.ELEVENLABS_BASE_URL,
        agent_phone_number_id=settings.ELEVENLABS_AGENT_PHONE_NUMBER_ID,
        timeout=settings.ELEVENLABS_TIMEOUT_SECONDS,
    )


def build_first_message(candidate, role) -> str:
    where = f" at {role.location}" if role.location else ""
    return (
        f"Hello {candidate.name}, this is an automated screening call for the "
        f"{role.title} position{where}. Are you available to answer a few questions?"
    )
