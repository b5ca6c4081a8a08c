"""
HTTP client for the agent backend.

Every chat message becomes one ``generate`` call. The conversation thread is
keyed by platform and sender, so each user keeps their own memory on the
agent side regardless of which chat the message came from.
"""

import logging
from typing import Any, Dict

import aiohttp

from chatbridge.config import AgentConfig
from chatbridge.errors import AgentError
from chatbridge.platforms.base import ChatMessage, ChatResponse, MessageType

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response from agent"


class AgentClient:
    """Talks to ``{endpoint}/agents/{agent_id}/generate``."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self._endpoint = config.endpoint.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.config.headers)
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def build_payload(self, message: ChatMessage) -> Dict[str, Any]:
        return {
            "messages": [{"role": "user", "content": message.content}],
            "threadId": f"{message.platform.value}_{message.sender_id}",
            "resourceId": message.sender_id,
        }

    async def send_message(self, message: ChatMessage) -> ChatResponse:
        """Forward one message to the agent and return its reply."""
        if not self.config.agent_id:
            raise AgentError("MASTRA_AGENT_ID is not configured")

        url = f"{self._endpoint}/agents/{self.config.agent_id}/generate"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=self.build_payload(message),
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                ) as resp:
                    if resp.status != 200:
                        error = await resp.text()
                        raise AgentError(
                            f"Agent returned {resp.status}: {error}",
                            details={"status": resp.status},
                        )
                    data = await resp.json()
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"Agent request failed: {e}") from e

        text = data.get("text") if isinstance(data, dict) else None
        logger.debug("Agent replied to %s (%d chars)", message.id, len(text or ""))
        return ChatResponse(
            content=text or NO_RESPONSE_TEXT,
            message_type=MessageType.TEXT,
            metadata={"agentId": self.config.agent_id},
        )

    async def health_check(self) -> bool:
        """True when the agent backend answers ``GET /agents``."""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self._endpoint}/agents",
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as resp:
                    return resp.status == 200
        except Exception as e:
            logger.debug("Agent health check failed: %s", e)
            return False
