"""AI-assisted drift comparison.

Serializes expected and actual resources into bounded markdown chunks, asks a
completion service for a JSON array of findings per chunk, and parses the
answer tolerantly. A response that is not a JSON array counts as zero
findings for that chunk; it never fails the run.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .models import ActualResource, Category, DriftFinding, ExpectedResource, Severity

logger = logging.getLogger(__name__)

# Token budget (1 token ~ 4 characters)
MAX_TOKENS_PER_CHUNK = 8000
MAX_RESPONSE_TOKENS = 4000
CHARS_PER_TOKEN = 4
MAX_CHARS_PER_CHUNK = MAX_TOKENS_PER_CHUNK * CHARS_PER_TOKEN
SPLIT_CHUNK_CHARS = MAX_TOKENS_PER_CHUNK * 2

MAX_PROPERTIES_PER_RESOURCE = 20
MAX_VALUE_CHARS = 100
TEMPERATURE = 0.3

AZURE_OPENAI_API_VERSION = "2024-06-01"
DEFAULT_COMPLETION_TIMEOUT_SECONDS = 120

SYSTEM_PROMPT = (
    "You are a cloud infrastructure auditor. You compare infrastructure-as-code "
    "declarations with the live state of Azure resources and report configuration drift. "
    "You answer only with JSON."
)

INSTRUCTIONS = """Compare the EXPECTED resources (declared in infrastructure-as-code) with the
ACTUAL resources (deployed in Azure) below and report every drift you find:
- expected resources that do not exist
- properties whose live value differs from the declared value
- live resources that are not declared

Answer with a JSON array and nothing else. Each element must have these fields:
  "ResourceId", "ResourceType", "ResourceName", "Property", "ExpectedValue",
  "ActualValue", "Severity" (CRITICAL, HIGH, MEDIUM, LOW or INFO),
  "Category" (security, cost, performance, compliance or configuration),
  "Description", "Recommendation".
Answer with [] when there is no drift.
"""

FENCE_PATTERN = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


class CompletionError(Exception):
    """Raised when the completion service cannot be reached or refuses the request."""

    pass


class CompletionClient(Protocol):
    """Text completion service."""

    async def complete(self, prompt: str) -> str: ...


class AzureOpenAICompletionClient:
    """Chat completions against an Azure OpenAI deployment.

    SECURITY: The API key travels only in the ``api-key`` header.
    """

    def __init__(
        self,
        endpoint: str,
        deployment: str,
        api_key: str,
        timeout_seconds: int = DEFAULT_COMPLETION_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = (
            f"{endpoint.rstrip('/')}/openai/deployments/{deployment}/chat/completions"
        )
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def complete(self, prompt: str) -> str:
        """Send one prompt and return the assistant message text.

        Raises:
            CompletionError: On transport errors or a non-2xx response.
        """
        payload = {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": TEMPERATURE,
            "max_tokens": MAX_RESPONSE_TOKENS,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self._url,
                    params={"api-version": AZURE_OPENAI_API_VERSION},
                    headers={"api-key": self._api_key},
                    json=payload,
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise CompletionError(
                f"Completion request failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError("Completion response has no message content") from e


# =============================================================================
# Serialization
# =============================================================================


def _truncate(value: str) -> str:
    if len(value) <= MAX_VALUE_CHARS:
        return value
    return value[: MAX_VALUE_CHARS - 3] + "..."


def _property_lines(properties: dict[str, str]) -> list[str]:
    items = list(properties.items())
    lines = [f"  - {key}: {_truncate(value)}" for key, value in items[:MAX_PROPERTIES_PER_RESOURCE]]
    if len(items) > MAX_PROPERTIES_PER_RESOURCE:
        lines.append(f"  - ({len(items) - MAX_PROPERTIES_PER_RESOURCE} more properties omitted)")
    return lines


def format_expected(resource: ExpectedResource) -> str:
    lines = [f"### EXPECTED {resource.type} / {resource.name}"]
    lines.extend(_property_lines(resource.declared_properties))
    return "\n".join(lines)


def format_actual(resource: ActualResource) -> str:
    lines = [
        f"### ACTUAL {resource.type} / {resource.name}",
        f"  - id: {resource.resource_id}",
        f"  - location: {resource.location}",
    ]
    lines.extend(_property_lines({f"tags.{k}": v for k, v in resource.tags.items()}))
    lines.extend(_property_lines(resource.properties))
    return "\n".join(lines)


def build_units(
    expected: Sequence[ExpectedResource], actual: Sequence[ActualResource]
) -> list[str]:
    """Group each expected resource with same-named live resources.

    Keeping related resources in the same unit means a chunk boundary never
    separates a declaration from its live counterpart.
    """
    remaining = list(actual)
    units: list[str] = []
    for declared in expected:
        related = [a for a in remaining if a.name.lower() == declared.name.lower()]
        remaining = [a for a in remaining if a not in related]
        units.append("\n".join([format_expected(declared), *map(format_actual, related)]))
    units.extend(format_actual(a) for a in remaining)
    return units


def build_chunks(
    expected: Sequence[ExpectedResource], actual: Sequence[ActualResource]
) -> list[str]:
    """Split the serialized resources into chunks that fit the token budget."""
    units = build_units(expected, actual)
    if not units:
        return []

    combined = "\n\n".join(units)
    if len(combined) < MAX_CHARS_PER_CHUNK:
        return [combined]

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for unit in units:
        if current and size + len(unit) > SPLIT_CHUNK_CHARS:
            chunks.append("\n\n".join(current))
            current, size = [], 0
        current.append(unit[:SPLIT_CHUNK_CHARS])
        size += len(unit) + 2
    if current:
        chunks.append("\n\n".join(current))
    return chunks


def build_prompt(chunk: str, index: int, total: int) -> str:
    header = f"Part {index + 1} of {total}.\n\n" if total > 1 else ""
    return f"{INSTRUCTIONS}\n{header}## Resources\n\n{chunk}\n"


# =============================================================================
# Response parsing
# =============================================================================


def _field(item: dict[str, Any], name: str) -> str:
    """Case-insensitive lookup so both PascalCase and camelCase answers work."""
    lowered = name.lower()
    for key, value in item.items():
        if str(key).lower() == lowered:
            return "" if value is None else str(value)
    return ""


def parse_findings(text: str, detected_at: datetime | None = None) -> list[DriftFinding]:
    """Parse a completion answer into findings.

    Returns an empty list when the answer is not a JSON array. Malformed
    elements are skipped.
    """
    detected_at = detected_at or datetime.now(UTC)
    cleaned = FENCE_PATTERN.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        logger.warning(
            "Completion response is not valid JSON",
            extra={"error": str(e), "response_chars": len(text)},
        )
        return []
    if not isinstance(data, list):
        logger.warning("Completion response is not a JSON array", extra={"type": type(data).__name__})
        return []

    findings: list[DriftFinding] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        resource_name = _field(item, "ResourceName")
        property_name = _field(item, "Property")
        if not resource_name or not property_name:
            continue
        try:
            findings.append(
                DriftFinding(
                    resource_id=_field(item, "ResourceId") or resource_name,
                    resource_type=_field(item, "ResourceType"),
                    resource_name=resource_name,
                    property=property_name,
                    expected_value=_field(item, "ExpectedValue"),
                    actual_value=_field(item, "ActualValue"),
                    severity=Severity.parse(_field(item, "Severity")),
                    category=Category.parse(_field(item, "Category")),
                    description=_field(item, "Description"),
                    recommendation=_field(item, "Recommendation"),
                    detected_at=detected_at,
                )
            )
        except ValidationError:
            logger.debug("Skipping malformed finding", extra={"item_keys": list(item)})
    return findings


class AiAssistedDiffStrategy:
    """DiffStrategy backed by a completion service."""

    def __init__(self, client: CompletionClient) -> None:
        self._client = client

    async def compare(
        self,
        expected: Sequence[ExpectedResource],
        actual: Sequence[ActualResource],
    ) -> list[DriftFinding]:
        """Compare resource sets chunk by chunk.

        Raises:
            CompletionError: If the completion service is unreachable.
        """
        chunks = build_chunks(expected, actual)
        detected_at = datetime.now(UTC)
        findings: list[DriftFinding] = []

        for index, chunk in enumerate(chunks):
            answer = await self._client.complete(build_prompt(chunk, index, len(chunks)))
            chunk_findings = parse_findings(answer, detected_at)
            logger.info(
                "AI comparison chunk analysed",
                extra={
                    "chunk": index + 1,
                    "chunks": len(chunks),
                    "finding_count": len(chunk_findings),
                },
            )
            findings.extend(chunk_findings)

        return findings
