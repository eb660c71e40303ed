"""Reasoning service adapters: subprocess CLI and OpenAI-compatible HTTP."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

from task_engine.config import ReasoningSettings
from task_engine.orchestrator.errors import UpstreamServiceError
from task_engine.orchestrator.failure_classifier import classify_upstream_failure

logger = logging.getLogger(__name__)

JSON_OBJECT_FORMAT: dict[str, Any] = {"type": "json_object"}


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ReasoningService(Protocol):
    def complete(
        self,
        messages: list[ChatMessage],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float = 0.2,
    ) -> str | dict[str, Any]: ...


def render_prompt(messages: list[ChatMessage]) -> str:
    """Flatten chat messages into one prompt for single-shot CLI tools."""

    return "\n\n".join(f"{message.role.upper()}:\n{message.content}" for message in messages)


def parse_json_object(raw: str | dict[str, Any], *, service: str) -> dict[str, Any]:
    """Decode a reasoning response; malformed output is a retryable upstream failure."""

    if isinstance(raw, dict):
        return raw
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise UpstreamServiceError(
            f"{service} returned malformed JSON: {error.msg} at position {error.pos}",
            retryable=True,
            reason_code=f"{service}_malformed_output",
        ) from error
    if not isinstance(payload, dict):
        raise UpstreamServiceError(
            f"{service} returned JSON {type(payload).__name__}, expected an object",
            retryable=True,
            reason_code=f"{service}_malformed_output",
        )
    return payload


class CliReasoningService:
    """Run a command template per request and read the answer from stdout."""

    service_name = "cli"

    def __init__(
        self,
        *,
        command_template: str,
        model: str = "default",
        timeout_seconds: float = 60.0,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds

    def complete(
        self,
        messages: list[ChatMessage],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float = 0.2,
    ) -> str:
        prompt = render_prompt(messages)
        if response_format is not None:
            prompt += "\n\nRespond with one JSON object only, without commentary."
        with tempfile.TemporaryDirectory(prefix="task_engine_prompt_") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            logger.debug("Running reasoning command %s", run_args[0])
            try:
                completed = subprocess.run(  # noqa: S603
                    run_args,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as error:
                raise UpstreamServiceError(
                    f"Reasoning command timed out after {self.timeout_seconds:g}s",
                    retryable=True,
                    reason_code=f"{self.service_name}_timeout",
                ) from error
            except FileNotFoundError as error:
                raise UpstreamServiceError(
                    f"Reasoning command not found: {run_args[0]}",
                    retryable=False,
                    reason_code=f"{self.service_name}_command_not_found",
                ) from error
            except OSError as error:
                raise UpstreamServiceError(
                    f"Reasoning command failed to start: {error}",
                    retryable=True,
                    reason_code=f"{self.service_name}_start_failed",
                ) from error

        if completed.returncode != 0:
            message = f"{completed.stderr}\n{completed.stdout}".strip()
            classification = classify_upstream_failure(
                service=self.service_name,
                message=message,
                exit_code=completed.returncode,
            )
            raise classification.to_error(
                f"Reasoning command exited with {completed.returncode}: {message[:500]}",
            )
        return completed.stdout


class HttpReasoningService:
    """OpenAI-compatible chat completions endpoint."""

    service_name = "http"

    def __init__(
        self,
        *,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def complete(
        self,
        messages: list[ChatMessage],
        *,
        response_format: dict[str, Any] | None = None,
        temperature: float = 0.2,
    ) -> str:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
            "temperature": temperature,
        }
        if response_format is not None:
            payload["response_format"] = response_format
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            with httpx.Client(transport=self._transport, timeout=self.timeout_seconds) as client:
                response = client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as error:
            raise UpstreamServiceError(
                f"Reasoning endpoint timed out after {self.timeout_seconds:g}s",
                retryable=True,
                reason_code=f"{self.service_name}_timeout",
            ) from error
        except httpx.HTTPStatusError as error:
            classification = classify_upstream_failure(
                service=self.service_name,
                message=error.response.text,
                status_code=error.response.status_code,
            )
            raise classification.to_error(
                f"Reasoning endpoint returned HTTP {error.response.status_code}",
            ) from error
        except httpx.TransportError as error:
            raise UpstreamServiceError(
                f"Reasoning endpoint unreachable: {error}",
                retryable=True,
                reason_code=f"{self.service_name}_transport_error",
            ) from error
        except ValueError as error:
            raise UpstreamServiceError(
                "Reasoning endpoint returned a non-JSON body",
                retryable=True,
                reason_code=f"{self.service_name}_malformed_output",
            ) from error

        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise UpstreamServiceError(
                "Reasoning endpoint returned no usable choice",
                retryable=True,
                reason_code=f"{self.service_name}_malformed_output",
            )
        return content


def build_reasoning_service(settings: ReasoningSettings) -> ReasoningService:
    if settings.backend == "http":
        return HttpReasoningService(
            url=settings.http_url,
            model=settings.model,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
        )
    return CliReasoningService(
        command_template=settings.command_template,
        model=settings.model,
        timeout_seconds=settings.timeout_seconds,
    )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise UpstreamServiceError(
            "Reasoning command template is empty.",
            retryable=False,
            reason_code="cli_bad_template",
        )
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise UpstreamServiceError(
            "Reasoning command template must include {prompt} or {prompt_file}.",
            retryable=False,
            reason_code="cli_bad_template",
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise UpstreamServiceError(
            f"Unsupported command template placeholder: {error}",
            retryable=False,
            reason_code="cli_bad_template",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise UpstreamServiceError(
            "Reasoning command template rendered empty command.",
            retryable=False,
            reason_code="cli_bad_template",
        )
    return argv
