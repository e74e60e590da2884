"""AI collaborator boundary: text-in, text-out generation through the claude CLI."""

import json
import logging
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "claude-code"


class AIProviderError(Exception):
    """Raised when the AI collaborator cannot produce a response."""


class AIProvider(Protocol):
    def generate(self, prompt: str, context: str = "", provider: str | None = None) -> str: ...


def _compose(prompt: str, context: str) -> str:
    if not context:
        return prompt
    return f"Context:\n{context}\n\n{prompt}"


class ClaudeCLIProvider:
    """Runs `claude -p` non-interactively and returns its text output."""

    def __init__(
        self,
        command: str = "claude",
        model: str | None = "sonnet",
        timeout: float = 600.0,
        cwd: str | Path | None = None,
    ):
        self.command = command
        self.model = model
        self.timeout = timeout
        self.cwd = cwd

    def generate(self, prompt: str, context: str = "", provider: str | None = None) -> str:
        cmd = [self.command, "-p", _compose(prompt, context), "--output-format", "text"]
        if self.model:
            cmd += ["--model", self.model]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise AIProviderError(f"{self.command} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise AIProviderError(f"{self.command} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            raise AIProviderError(
                f"{self.command} exited with {result.returncode}: {result.stderr.strip()[:500]}"
            )
        return result.stdout


class ProviderManager:
    """Routes generate() calls to a named provider."""

    def __init__(self, providers: dict[str, AIProvider], default: str = DEFAULT_PROVIDER):
        if default not in providers:
            raise ValueError(f"Default provider '{default}' is not registered")
        self.providers = providers
        self.default = default

    def generate(self, prompt: str, context: str = "", provider: str | None = None) -> str:
        name = provider or self.default
        target = self.providers.get(name)
        if target is None:
            raise AIProviderError(f"Unknown AI provider: {name}")
        logger.debug("Generating with provider %s (%d prompt chars)", name, len(prompt))
        return target.generate(prompt, context=context)


def extract_json_object(text: str) -> dict | None:
    """Return the first JSON object embedded anywhere in text, or None."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None
