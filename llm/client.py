"""
Remote classifier client using direct REST calls to an OpenAI-compatible
chat-completions endpoint. Handles retries of transient failures and
parsing of the JSON answer.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
import urllib3
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings, get_settings
from core.exceptions import ConfigurationError, RemoteServiceError, ValidationError
from core.logger import setup_logger

logger = setup_logger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class CompletionResult:
    """Parsed JSON answer plus the token usage reported by the endpoint."""
    data: Dict[str, Any]
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    @property
    def total_tokens(self) -> Optional[int]:
        if self.input_tokens is None and self.output_tokens is None:
            return None
        return (self.input_tokens or 0) + (self.output_tokens or 0)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RemoteServiceError) and exc.retryable


def strip_code_fences(content: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    content_stripped = content.strip()
    if content_stripped.startswith("```"):
        lines = content_stripped.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        content_stripped = "\n".join(lines).strip()
    return content_stripped


def extract_content(completion_data: Dict[str, Any]) -> Optional[str]:
    """
    Find the assistant text in a completion payload.

    Standard responses carry it in choices[0].message.content; gateway
    responses carry it in an `output` list of message items.

    Raises:
        ValidationError: If the content found is not text
    """
    content = None

    if "choices" in completion_data:
        try:
            content = completion_data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            pass

    output = completion_data.get("output")
    if not content and isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "message" and item.get("role") == "assistant":
                parts = item.get("content")
                for content_item in parts if isinstance(parts, list) else []:
                    if isinstance(content_item, dict) and content_item.get("type") == "output_text":
                        content = content_item.get("text")
                        break
            if content:
                break

    if content is not None and not isinstance(content, str):
        raise ValidationError(
            "Unexpected response structure: completion content is not text",
            details={"content_type": type(content).__name__},
        )
    return content


def usage_count(value: Any) -> Optional[int]:
    """Token count from a usage block; anything but a non-negative integer is ignored."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def parse_response_body(text: str) -> Dict[str, Any]:
    """
    Parse the HTTP body. Plain JSON is the norm; streaming gateways send
    NDJSON, in which case the last object carrying a completion is used.
    """
    text = text.strip()
    if not text:
        raise ValidationError("Empty response from remote classifier")

    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        body = None
    else:
        if not isinstance(body, dict):
            raise ValidationError(
                "Unexpected response structure: body is not a JSON object",
                details={"raw_response": text[:500]},
            )
        return body

    completion_data = None
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValidationError(
                f"Remote classifier returned invalid JSON: {e}",
                details={"raw_response": text[:500]},
            )
        if isinstance(obj, dict) and ("choices" in obj or "output" in obj):
            completion_data = obj

    if completion_data is None:
        raise ValidationError(
            "Unexpected response structure: no completion object in body",
            details={"raw_response": text[:500]},
        )
    return completion_data


class LLMClient:
    """Client for the remote classifier with retry logic."""

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize REST API client.

        Raises:
            ConfigurationError: If no API key is configured
        """
        settings = settings or get_settings()
        if not settings.openai_api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY environment variable not set",
                details={"required_key": "OPENAI_API_KEY"}
            )

        self.gateway_url = settings.openai_gateway_url
        self.api_key = settings.openai_api_key
        self.model = settings.openai_model
        self.timeout = settings.openai_timeout
        self.max_retries = settings.openai_max_retries
        self.verify_ssl = settings.openai_verify_ssl
        self.max_completion_tokens = settings.openai_max_completion_tokens
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=10)

        if not self.verify_ssl:
            # Internal gateways with self-signed certificates
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.info(f"Initialized remote classifier client with model: {self.model}, gateway: {self.gateway_url}")

    def complete_json(
        self,
        system_prompt: str,
        user_message: str,
        max_completion_tokens: Optional[int] = None,
    ) -> CompletionResult:
        """
        Send one chat completion request and parse the JSON answer.

        Transient failures (timeouts, connection errors, 429, 5xx) are
        retried up to OPENAI_MAX_RETRIES attempts in total.

        Args:
            system_prompt: System instruction
            user_message: User message with transaction data
            max_completion_tokens: Output token cap (defaults to settings)

        Returns:
            CompletionResult with the parsed JSON object and token usage

        Raises:
            RemoteServiceError: If the call fails after retries
            ValidationError: If the answer is not a JSON object
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "response_format": {"type": "json_object"},
            "max_completion_tokens": max_completion_tokens or self.max_completion_tokens,
        }

        retryer = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        return retryer(self._post, payload)

    def _post(self, payload: Dict[str, Any]) -> CompletionResult:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }

        try:
            response = requests.post(
                self.gateway_url,
                headers=headers,
                data=json.dumps(payload),
                verify=self.verify_ssl,
                timeout=self.timeout
            )
            response.raise_for_status()

        except requests.exceptions.Timeout as e:
            logger.warning(f"Remote classifier timeout after {self.timeout}s: {e}")
            raise RemoteServiceError(
                f"Remote classifier timeout after {self.timeout}s",
                details={"gateway_url": self.gateway_url, "timeout": self.timeout, "retryable": True}
            )

        except requests.exceptions.HTTPError as e:
            status_code = getattr(e.response, "status_code", None)
            logger.warning(f"Remote classifier HTTP error: {e}")
            raise RemoteServiceError(
                f"Remote classifier returned HTTP error: {e}",
                details={
                    "gateway_url": self.gateway_url,
                    "status_code": status_code,
                    "response_text": getattr(e.response, "text", None),
                    "retryable": status_code in RETRYABLE_STATUS_CODES,
                }
            )

        except requests.exceptions.ConnectionError as e:
            logger.warning(f"Failed to connect to remote classifier: {e}")
            raise RemoteServiceError(
                f"Failed to connect to remote classifier: {e}",
                details={"gateway_url": self.gateway_url, "error": str(e), "retryable": True}
            )

        except requests.exceptions.RequestException as e:
            logger.error(f"Remote classifier request failed: {e}")
            raise RemoteServiceError(
                f"Remote classifier request failed: {e}",
                details={"gateway_url": self.gateway_url, "error": str(e), "retryable": False}
            )

        completion_data = parse_response_body(response.text)

        content = extract_content(completion_data)
        if not content:
            logger.error(f"Response keys: {list(completion_data.keys())}")
            raise ValidationError(
                "Unexpected response structure: could not find content in 'choices' or 'output'",
                details={"response_keys": list(completion_data.keys())}
            )

        try:
            data = json.loads(strip_code_fences(content))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse remote classifier answer as JSON: {e}")
            logger.debug(f"Raw answer: {content}")
            raise ValidationError(
                f"Remote classifier returned invalid JSON: {e}",
                details={"raw_response": content[:500]}
            )

        if not isinstance(data, dict):
            raise ValidationError(
                "Remote classifier answer is not a JSON object",
                details={"answer_type": type(data).__name__}
            )

        input_tokens = output_tokens = None
        usage = completion_data.get("usage")
        if isinstance(usage, dict):
            input_tokens = usage_count(usage.get("prompt_tokens", usage.get("input_tokens")))
            output_tokens = usage_count(usage.get("completion_tokens", usage.get("output_tokens")))
            logger.debug(f"Token usage - Input: {input_tokens}, Output: {output_tokens}")

        return CompletionResult(data=data, input_tokens=input_tokens, output_tokens=output_tokens)


# Singleton client instance
_client: Optional[LLMClient] = None


def get_client() -> LLMClient:
    """
    Get or create the remote classifier client singleton.

    Returns:
        LLMClient instance

    Raises:
        ConfigurationError: If no API key is configured
    """
    global _client
    if _client is None:
        _client = LLMClient()
    return _client


def reset_client() -> None:
    """Drop the client singleton (used after settings change and in tests)."""
    global _client
    _client = None
