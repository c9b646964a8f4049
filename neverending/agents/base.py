"""Base agent: routes calls to a generation tier and keeps a short call trail."""

import time
from dataclasses import dataclass

from ..generation import CAPABLE, GenerationClient
from ..utils import parse_json_response

MAX_LOGS = 200


@dataclass
class AgentLog:
    agent_name: str = ""
    action: str = ""
    tier: str = ""
    prompt_preview: str = ""
    response_preview: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    elapsed_seconds: float = 0.0


class BaseAgent:
    """Base class for agents that talk to the generation service through a shared client."""

    tier: str = CAPABLE

    def __init__(self, name: str, client: GenerationClient):
        self.name = name
        self.client = client
        self.logs: list[AgentLog] = []

    def call(
        self,
        system: str,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        tier: str | None = None,
        action: str = "call",
    ) -> str:
        tier = tier or self.tier
        start = time.time()
        result = self.client.generate(
            prompt,
            max_tokens=max_tokens,
            tier=tier,
            system=system,
            temperature=temperature,
        )
        self._log(action, tier, prompt, result.text, time.time() - start, result.usage)
        return result.text

    def call_json(
        self,
        system: str,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        tier: str | None = None,
        action: str = "call_json",
    ) -> dict | list:
        """Call the model and parse JSON from the response."""
        raw = self.call(
            system + "\n\nRespond with valid JSON only.",
            prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            tier=tier,
            action=action,
        )
        return parse_json_response(raw)

    def _log(self, action, tier, prompt, response, elapsed, usage) -> None:
        self.logs.append(
            AgentLog(
                agent_name=self.name,
                action=action,
                tier=tier,
                prompt_preview=prompt[:200],
                response_preview=response[:200] if response else "",
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                elapsed_seconds=round(elapsed, 2),
            )
        )
        if len(self.logs) > MAX_LOGS:
            self.logs = self.logs[-MAX_LOGS:]
