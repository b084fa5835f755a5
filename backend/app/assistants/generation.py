"""Loop de geração com chamadas de ferramenta (function calling)."""

from __future__ import annotations

from typing import Any

from app.assistants.tools import TOOL_DECLARATIONS, ToolDispatcher
from app.core.logging import get_logger
from app.services.gemini import GeminiClient
from app.services.trace import DecisionTrace

logger = get_logger(__name__)

MAX_TOOL_ROUNDS = 3
FALLBACK_REPLY = "Desculpe, tive um problema ao processar sua mensagem."
EMPTY_REPLY = "Desculpe, não consegui formular uma resposta."


class GenerationEngine:
    def __init__(
        self,
        client: GeminiClient | None = None,
        *,
        max_rounds: int = MAX_TOOL_ROUNDS,
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self._client = client or GeminiClient()
        self._max_rounds = max_rounds
        self._tools = tools if tools is not None else TOOL_DECLARATIONS

    async def run(
        self,
        *,
        system_prompt: str,
        user_parts: list[dict[str, Any]],
        dispatcher: ToolDispatcher,
        trace: DecisionTrace,
    ) -> str:
        """Executa até `max_rounds` rodadas; `GenerationError` propaga para o runner."""
        contents: list[dict[str, Any]] = [{"role": "user", "parts": user_parts}]

        for round_number in range(1, self._max_rounds + 1):
            turn = await self._client.generate(
                contents, tools=self._tools, system_instruction=system_prompt
            )

            if turn.function_call is None:
                trace.decision("gemini_text_response", round=round_number)
                return turn.text or EMPTY_REPLY

            call = turn.function_call
            contents.append(turn.content)

            args, filled = dispatcher.autofill(call.name, call.args)
            trace.decision("tool_autofill", tool=call.name, autofilled=filled)
            result = await dispatcher.dispatch(call.name, args)
            trace.tool_call(call.name, ok=result.ok, status=result.status, error=result.error)
            logger.info(
                "generation.tool_call",
                extra={"tool": call.name, "ok": result.ok, "status": result.status},
            )

            contents.append(
                {
                    "role": "function",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": call.name,
                                "response": {"content": result.payload},
                            }
                        }
                    ],
                }
            )

        trace.decision("tool_round_budget_exhausted", rounds=self._max_rounds)
        return FALLBACK_REPLY
