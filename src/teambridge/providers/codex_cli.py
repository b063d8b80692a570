"""Codex CLI provider adapter."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from teambridge.providers.base import BaseProvider, ExecutionRequest, ExecutionResult, ProviderError

DEFAULT_CODEX_MODEL = "gpt-5-codex"


class CodexCLIProvider(BaseProvider):
    provider_id = "codex"
    install_hint = "Install it with: npm install -g @openai/codex, then authenticate with: codex login"

    def __init__(self, binary: str = "codex", default_model: str = DEFAULT_CODEX_MODEL) -> None:
        super().__init__(binary)
        self._default_model = default_model

    def build_command(self, request: ExecutionRequest) -> List[str]:
        return [
            self._binary,
            "exec",
            "-m",
            request.model or self._default_model,
            "--json",
            "--skip-git-repo-check",
            request.prompt,
        ]

    def invoke(self, request: ExecutionRequest) -> ExecutionResult:
        completed = self._run(self.build_command(request), request)
        output, events = self._parse_jsonl_stdout(completed.stdout)
        return ExecutionResult(success=True, output=output, raw_events=events)

    def _parse_jsonl_stdout(self, stdout: str) -> Tuple[str, List[Dict[str, Any]]]:
        events: List[Dict[str, Any]] = []
        final_output: Optional[str] = None

        for line in [item.strip() for item in stdout.splitlines() if item.strip()]:
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            events.append(event)

            event_type = str(event.get("type") or "")
            if event_type == "error":
                raise ProviderError(
                    str(event.get("message") or "codex provider error"),
                    provider_id=self.provider_id,
                )

            text = self._extract_event_text(event)
            if text:
                final_output = text

        if final_output is None:
            # Non-JSON output from older CLIs is taken verbatim.
            final_output = "" if events else stdout.strip()
        return final_output, events

    @staticmethod
    def _extract_event_text(event: Dict[str, Any]) -> str:
        event_type = str(event.get("type") or "")
        item = event.get("item") if isinstance(event.get("item"), dict) else {}

        if event_type == "item.completed" and item.get("type") == "agent_message":
            return str(item.get("text") or "")
        if event_type == "message" and isinstance(event.get("content"), str):
            return event["content"]
        if event_type == "response" and isinstance(event.get("text"), str):
            return event["text"]

        message = event.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                parts = [
                    str(part.get("text") or "")
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text"
                ]
                return "\n".join(part for part in parts if part)
        return ""
