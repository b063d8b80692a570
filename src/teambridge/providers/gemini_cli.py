"""Gemini CLI provider adapter."""

from __future__ import annotations

from typing import List

from teambridge.providers.base import BaseProvider, ExecutionRequest, ExecutionResult


class GeminiCLIProvider(BaseProvider):
    provider_id = "gemini"
    install_hint = "Install it with: npm install -g @google/gemini-cli"

    def __init__(self, binary: str = "gemini") -> None:
        super().__init__(binary)

    def build_command(self, request: ExecutionRequest) -> List[str]:
        command = [self._binary, "-p", request.prompt]
        if request.model:
            command.extend(["-m", request.model])
        return command

    def invoke(self, request: ExecutionRequest) -> ExecutionResult:
        completed = self._run(self.build_command(request), request)
        return ExecutionResult(success=True, output=completed.stdout.strip())
