import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from libdesk.assistant.tool_catalog import Tool, to_openai_schema
from libdesk.assistant.tool_selection import UserLevel
from libdesk.config import settings
from libdesk.database import get_db_connection, initialize_database
from libdesk.errors import ExternalServiceError, RateLimitExceeded
from libdesk.services.http_client import get_http_client

logger = logging.getLogger(__name__)

LEVEL_INSTRUCTIONS = {
    UserLevel.NOVICE: (
        "Ты помощник библиотекаря. Объясняй шаги простыми словами, "
        "перед удалением или массовыми изменениями всегда спрашивай подтверждение."
    ),
    UserLevel.INTERMEDIATE: (
        "Ты помощник библиотекаря. Отвечай кратко, вызывай инструменты, "
        "когда для ответа нужны данные библиотеки."
    ),
    UserLevel.EXPERT: (
        "Ты помощник администратора библиотеки. Отвечай максимально кратко, "
        "используй массовые операции, когда это уменьшает число вызовов."
    ),
}


def system_instructions(user_level: int) -> str:
    return LEVEL_INSTRUCTIONS.get(UserLevel(user_level), LEVEL_INSTRUCTIONS[UserLevel.INTERMEDIATE])


class OpenRouterService:
    """Chat completions with tool calling through OpenRouter."""

    def __init__(self, api_key: Optional[str] = None, db_file: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = settings.openrouter_base_url.rstrip("/")
        self.default_model = settings.openrouter_model
        self.timeout = settings.openrouter_timeout
        self.db_file = db_file
        initialize_database(db_file)

    @property
    def available(self) -> bool:
        return settings.enable_ai_assistant and bool(self.api_key)

    def _log_api_usage(self, model: str, success: bool, response_time_ms: int = 0, tokens_used: int = 0) -> None:
        conn = get_db_connection(self.db_file)
        try:
            conn.execute(
                "INSERT INTO api_usage_logs (api_name, endpoint, success, response_time_ms, tokens_used) "
                "VALUES (?, ?, ?, ?, ?)",
                ("openrouter", model, success, response_time_ms, tokens_used),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("OpenRouter usage logged: model=%s, tokens=%d, success=%s", model, tokens_used, success)

    def get_usage_stats(self) -> Dict[str, Any]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS calls,
                       COALESCE(SUM(CASE WHEN success THEN 1 ELSE 0 END), 0) AS successful,
                       COALESCE(SUM(tokens_used), 0) AS tokens,
                       AVG(response_time_ms) AS avg_response_time_ms
                FROM api_usage_logs WHERE api_name = 'openrouter'
                """
            ).fetchone()
        finally:
            conn.close()
        stats = dict(row)
        stats["available"] = self.available
        return stats

    async def chat(self, messages: List[Dict[str, Any]], tools: Optional[List[Tool]] = None,
                   model: Optional[str] = None) -> Dict[str, Any]:
        """Send a conversation and return ``{"content", "tool_calls", "model"}``.

        Raises:
            ExternalServiceError: assistant disabled, no API key, or OpenRouter unreachable.
            RateLimitExceeded: OpenRouter answered 429.
        """
        if not self.available:
            raise ExternalServiceError("AI assistant is not configured.")

        model = model or self.default_model
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = [to_openai_schema(tool) for tool in tools]
            payload["tool_choice"] = "auto"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": settings.app_name,
        }

        client = await get_http_client()
        start_time = time.time()
        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers,
                                         timeout=self.timeout)
        except httpx.RequestError as e:
            self._log_api_usage(model, False)
            logger.warning("OpenRouter request failed: %s", e)
            raise ExternalServiceError("OpenRouter is unreachable.") from e
        response_time_ms = int((time.time() - start_time) * 1000)

        if response.status_code == 429:
            self._log_api_usage(model, False, response_time_ms)
            logger.warning("OpenRouter rate limit exceeded")
            raise RateLimitExceeded("OpenRouter rate limit exceeded.")
        if response.status_code != 200:
            self._log_api_usage(model, False, response_time_ms)
            logger.error("OpenRouter request failed: %s - %s", response.status_code, response.text[:200])
            raise ExternalServiceError(f"OpenRouter answered {response.status_code}.")

        data = response.json()
        tokens = (data.get("usage") or {}).get("total_tokens", 0)
        self._log_api_usage(model, True, response_time_ms, tokens)

        choices = data.get("choices") or []
        message = choices[0].get("message", {}) if choices else {}
        tool_calls = [
            {
                "id": call.get("id"),
                "name": (call.get("function") or {}).get("name"),
                "arguments": (call.get("function") or {}).get("arguments") or "{}",
            }
            for call in message.get("tool_calls") or []
        ]
        return {"content": message.get("content") or "", "tool_calls": tool_calls, "model": data.get("model", model)}
