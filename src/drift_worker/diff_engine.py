"""Drift diff engine.

Compares the resources declared by infrastructure-as-code against the live
inventory and produces classified DriftFindings.

Two strategies share one contract:
- RuleBasedDiffStrategy: deterministic name/type matching with a keyword
  classifier (default)
- AiAssistedDiffStrategy: delegates judgment to a completion service
  (see ai_diff)

The strategy is chosen once at startup from configuration.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

import httpx

from .ai_diff import AiAssistedDiffStrategy, AzureOpenAICompletionClient
from .config import Config, DiffStrategyKind
from .models import ActualResource, Category, DriftFinding, ExpectedResource, Severity
from .secret_store import SecretStore

logger = logging.getLogger(__name__)

# Ordered keyword tables: first match wins
SEVERITY_KEYWORDS: tuple[tuple[Severity, tuple[str, ...]], ...] = (
    (Severity.CRITICAL, ("security", "access", "encryption", "identity", "sku", "networkrules")),
    (Severity.HIGH, ("capacity", "size", "tier", "replication")),
    (Severity.LOW, ("tags", "metadata", "description")),
)

CATEGORY_KEYWORDS: tuple[tuple[Category, tuple[str, ...]], ...] = (
    (Category.SECURITY, ("security", "encryption", "access")),
    (Category.COST, ("sku", "capacity")),
    (Category.PERFORMANCE, ("size", "tier")),
)

EXISTENCE_PROPERTY = "existence"


class DiffStrategy(Protocol):
    """Compares expected and actual resource sets."""

    async def compare(
        self,
        expected: Sequence[ExpectedResource],
        actual: Sequence[ActualResource],
    ) -> list[DriftFinding]: ...


def classify_severity(property_name: str) -> Severity:
    """Severity for a drifted property, by keyword."""
    lowered = property_name.lower()
    for severity, keywords in SEVERITY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return severity
    return Severity.MEDIUM


def classify_category(property_name: str) -> Category:
    """Category for a drifted property, by keyword."""
    lowered = property_name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return Category.CONFIGURATION


def _comparable_properties(resource: ActualResource) -> dict[str, str]:
    """Live properties keyed case-insensitively, with tags and location folded in."""
    bag = {f"tags.{key}".lower(): value for key, value in resource.tags.items()}
    if resource.location:
        bag["location"] = resource.location
    bag.update({key.lower(): value for key, value in resource.properties.items()})
    return bag


def _matches(expected: ExpectedResource, actual: ActualResource) -> bool:
    return (
        expected.name.lower() == actual.name.lower()
        and expected.type.lower() in actual.type.lower()
    )


class RuleBasedDiffStrategy:
    """Deterministic comparator.

    Output order is stable: findings for expected resources in declaration
    order, then undeclared actual resources in inventory order.
    """

    async def compare(
        self,
        expected: Sequence[ExpectedResource],
        actual: Sequence[ActualResource],
    ) -> list[DriftFinding]:
        detected_at = datetime.now(UTC)
        findings: list[DriftFinding] = []

        for declared in expected:
            match = next((a for a in actual if _matches(declared, a)), None)
            if match is None:
                findings.append(self._missing(declared, detected_at))
                continue
            findings.extend(self._property_drift(declared, match, detected_at))

        declared_names = {e.name.lower() for e in expected}
        for live in actual:
            if live.name.lower() not in declared_names:
                findings.append(self._undeclared(live, detected_at))

        logger.debug(
            "Rule-based comparison complete",
            extra={
                "expected_count": len(expected),
                "actual_count": len(actual),
                "finding_count": len(findings),
            },
        )
        return findings

    @staticmethod
    def _missing(declared: ExpectedResource, detected_at: datetime) -> DriftFinding:
        return DriftFinding(
            resource_id=f"expected/{declared.type}/{declared.name}",
            resource_type=declared.type,
            resource_name=declared.name,
            property=EXISTENCE_PROPERTY,
            expected_value="exists",
            actual_value="missing",
            severity=Severity.HIGH,
            category=Category.CONFIGURATION,
            description=f"Expected resource {declared.name} of type {declared.type} is missing",
            recommendation="Re-run the pipeline to deploy the missing resource",
            detected_at=detected_at,
        )

    @staticmethod
    def _property_drift(
        declared: ExpectedResource,
        live: ActualResource,
        detected_at: datetime,
    ) -> list[DriftFinding]:
        live_properties = _comparable_properties(live)
        findings = []
        for name, expected_value in declared.declared_properties.items():
            actual_value = live_properties.get(name.lower())
            if actual_value is None:
                continue
            if expected_value.lower() == actual_value.lower():
                continue
            findings.append(
                DriftFinding(
                    resource_id=live.resource_id,
                    resource_type=live.type,
                    resource_name=live.name,
                    property=name,
                    expected_value=expected_value,
                    actual_value=actual_value,
                    severity=classify_severity(name),
                    category=classify_category(name),
                    description=(
                        f"Property '{name}' changed from '{expected_value}' to '{actual_value}'"
                    ),
                    recommendation="Review the change and re-run pipeline if needed",
                    detected_at=detected_at,
                )
            )
        return findings

    @staticmethod
    def _undeclared(live: ActualResource, detected_at: datetime) -> DriftFinding:
        return DriftFinding(
            resource_id=live.resource_id,
            resource_type=live.type,
            resource_name=live.name,
            property=EXISTENCE_PROPERTY,
            expected_value="not defined",
            actual_value="exists",
            severity=Severity.MEDIUM,
            category=Category.CONFIGURATION,
            description=f"Resource {live.name} exists but is not defined in infrastructure code",
            recommendation="Either add to IaC definition or remove if not needed",
            detected_at=detected_at,
        )


async def create_diff_strategy(
    config: Config,
    secret_store: SecretStore,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DiffStrategy:
    """Select the configured diff strategy.

    Raises:
        RuntimeError: If the AI strategy is configured but its key is missing.
    """
    match config.diff_strategy:
        case DiffStrategyKind.AI_ASSISTED:
            api_key = await secret_store.get_secret(config.ai_api_key_secret_name)
            if not api_key:
                raise RuntimeError(
                    f"Secret '{config.ai_api_key_secret_name}' is required for ai_assisted diffing"
                )
            client = AzureOpenAICompletionClient(
                endpoint=config.ai_endpoint or "",
                deployment=config.ai_deployment or "",
                api_key=api_key,
                transport=transport,
            )
            logger.info(
                "Using AI-assisted diff strategy",
                extra={"deployment": config.ai_deployment},
            )
            return AiAssistedDiffStrategy(client)
        case _:
            logger.info("Using rule-based diff strategy")
            return RuleBasedDiffStrategy()
