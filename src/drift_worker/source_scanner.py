"""Azure DevOps source scanner.

Reconstructs the expected state of a pipeline:
1. Fetch the build definition (name, YAML file, repository)
2. Fetch the pipeline YAML and find infrastructure-as-code references
3. Fetch ARM templates and extract declared resources

Bicep and Terraform references are recorded without resources because the
worker has no compiler for them. Unreadable files degrade to zero resources.

SECURITY:
- The access token is only sent as basic auth to the organization URL
- Fetched files are bounded by size
- Pipeline YAML is parsed with yaml.safe_load
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any
from urllib.parse import quote

import httpx
import yaml

from .config import (
    DEFAULT_DEVOPS_TIMEOUT_SECONDS,
    MAX_PIPELINE_YAML_SIZE_BYTES,
    MAX_TEMPLATE_FILE_SIZE_BYTES,
    MAX_TEMPLATES_PER_PIPELINE,
)
from .models import (
    ExpectedResource,
    InfrastructureDefinition,
    InfrastructureKind,
    PipelineScanResult,
)
from .property_bag import flatten_properties

logger = logging.getLogger(__name__)

API_VERSION = "7.1"

# YAML keys whose values point at deployable templates
TEMPLATE_KEYS = frozenset({"csmfile", "templatefile", "template", "deploymenttemplate"})
TERRAFORM_KEYS = frozenset({"workingdirectory", "path"})

# Raw-text fallback when the pipeline YAML does not parse
ARM_REFERENCE_PATTERN = re.compile(r"template:\s*['\"]?([^'\"\s]+\.json)['\"]?", re.IGNORECASE)
BICEP_REFERENCE_PATTERN = re.compile(r"template:\s*['\"]?([^'\"\s]+\.bicep)['\"]?", re.IGNORECASE)
TERRAFORM_REFERENCE_PATTERN = re.compile(
    r"(?:workingDirectory|path):\s*['\"]?([^'\"\n]*terraform[^'\"\n]*)['\"]?", re.IGNORECASE
)

# Pipeline variables such as $(System.DefaultWorkingDirectory)/
PIPELINE_VARIABLE_PREFIX = re.compile(r"^(\$\([^)]*\)[/\\]?)+")

# [parameters('name')] / [variables('name')]
SIMPLE_EXPRESSION_PATTERN = re.compile(
    r"^\[\s*(parameters|variables)\(\s*'([^']+)'\s*\)\s*\]$", re.IGNORECASE
)


class SourceScanError(Exception):
    """Raised when a pipeline definition cannot be read."""

    pass


class SourceScanner:
    """Reads pipeline definitions and templates from Azure DevOps."""

    def __init__(
        self,
        timeout_seconds: int = DEFAULT_DEVOPS_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the scanner.

        Args:
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def scan_pipeline(
        self,
        organization_url: str,
        project: str,
        definition_id: str,
        token: str,
    ) -> PipelineScanResult:
        """Scan one pipeline definition.

        Never raises for HTTP or parse errors; they are reported through
        ``success=False`` and ``error_message``.

        Args:
            organization_url: e.g. https://dev.azure.com/contoso
            project: Project name.
            definition_id: Numeric build definition id.
            token: Personal access token.
        """
        result = PipelineScanResult(pipeline_id=definition_id)

        async with httpx.AsyncClient(
            base_url=organization_url.rstrip("/") + "/",
            auth=httpx.BasicAuth("", token),
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                definition = await self._get_definition(client, project, definition_id)
            except (SourceScanError, httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "Pipeline definition scan failed",
                    extra={"definition_id": definition_id, "project": project, "error": str(e)},
                )
                result.error_message = str(e) or type(e).__name__
                return result

            result.pipeline_name = definition.get("name", "")
            result.success = True

            yaml_filename = (definition.get("process") or {}).get("yamlFilename")
            repository = definition.get("repository") or {}
            if not yaml_filename or not repository.get("id"):
                logger.info(
                    "Pipeline is not YAML-based, no infrastructure references",
                    extra={"definition_id": definition_id},
                )
                return result

            branch = _branch_name(repository.get("defaultBranch"))
            yaml_content = await self._get_file(
                client, project, repository["id"], yaml_filename, branch, MAX_PIPELINE_YAML_SIZE_BYTES
            )
            if yaml_content is None:
                return result
            result.yaml_content = yaml_content

            for kind, path in find_template_references(yaml_content):
                definition_entry = InfrastructureDefinition(kind=kind, file_path=path)
                if kind == InfrastructureKind.ARM:
                    content = await self._get_file(
                        client, project, repository["id"], path, branch, MAX_TEMPLATE_FILE_SIZE_BYTES
                    )
                    if content is not None:
                        definition_entry.content = content
                        definition_entry.resources = parse_arm_template(content, path)
                result.definitions.append(definition_entry)

        logger.info(
            "Pipeline scanned",
            extra={
                "definition_id": definition_id,
                "pipeline_name": result.pipeline_name,
                "definitions": len(result.definitions),
                "expected_resources": len(result.expected_resources),
            },
        )
        return result

    async def _get_definition(
        self, client: httpx.AsyncClient, project: str, definition_id: str
    ) -> dict[str, Any]:
        if not definition_id.isdigit():
            raise SourceScanError(f"Build definition id must be numeric: {definition_id}")

        response = await client.get(
            f"{quote(project)}/_apis/build/definitions/{definition_id}",
            params={"api-version": API_VERSION},
        )
        if response.status_code in (401, 403):
            raise SourceScanError(f"Access denied to build definition {definition_id}")
        if response.status_code == 404:
            raise SourceScanError(f"Build definition {definition_id} not found")
        response.raise_for_status()

        body = response.json()
        if not isinstance(body, dict):
            raise SourceScanError("Unexpected build definition response")
        return body

    async def _get_file(
        self,
        client: httpx.AsyncClient,
        project: str,
        repository_id: str,
        path: str,
        branch: str | None,
        max_bytes: int,
    ) -> str | None:
        """Fetch a file from the pipeline's repository, or None if unreadable."""
        params = {
            "path": path,
            "includeContent": "true",
            "$format": "text",
            "api-version": API_VERSION,
        }
        if branch:
            params["versionDescriptor.version"] = branch
            params["versionDescriptor.versionType"] = "branch"

        try:
            response = await client.get(
                f"{quote(project)}/_apis/git/repositories/{quote(repository_id)}/items",
                params=params,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Repository file unreadable", extra={"path": path, "error": str(e)})
            return None

        if len(response.content) > max_bytes:
            logger.warning(
                "Repository file exceeds size limit",
                extra={"path": path, "size_bytes": len(response.content), "limit_bytes": max_bytes},
            )
            return None
        return response.text


def _branch_name(ref: str | None) -> str | None:
    if not ref:
        return None
    return ref.removeprefix("refs/heads/")


def _normalize_path(raw: str) -> str:
    path = PIPELINE_VARIABLE_PREFIX.sub("", raw.strip()).replace("\\", "/")
    path = path.removeprefix("./")
    return path if path.startswith("/") else f"/{path}"


def _classify_reference(key: str, value: str) -> InfrastructureKind | None:
    lowered_key = key.lower()
    lowered = value.lower()
    if lowered_key in TEMPLATE_KEYS:
        if lowered.endswith(".json"):
            return InfrastructureKind.ARM
        if lowered.endswith(".bicep"):
            return InfrastructureKind.BICEP
    if lowered_key in TERRAFORM_KEYS and "terraform" in lowered:
        return InfrastructureKind.TERRAFORM
    return None


def _walk_mappings(node: Any) -> Iterator[tuple[str, str]]:
    if isinstance(node, dict):
        for key, value in node.items():
            if isinstance(value, str):
                yield str(key), value
            else:
                yield from _walk_mappings(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_mappings(item)


def find_template_references(yaml_content: str) -> list[tuple[InfrastructureKind, str]]:
    """Find IaC files referenced by a pipeline YAML.

    Returns:
        (kind, normalized path) pairs in document order, without duplicates.
    """
    found: list[tuple[InfrastructureKind, str]] = []

    try:
        document = yaml.safe_load(yaml_content)
        candidates = [
            (kind, value)
            for key, value in _walk_mappings(document)
            if (kind := _classify_reference(key, value)) is not None
        ]
    except yaml.YAMLError as e:
        logger.warning("Pipeline YAML does not parse, using text search", extra={"error": str(e)})
        candidates = (
            [(InfrastructureKind.ARM, m) for m in ARM_REFERENCE_PATTERN.findall(yaml_content)]
            + [(InfrastructureKind.BICEP, m) for m in BICEP_REFERENCE_PATTERN.findall(yaml_content)]
            + [
                (InfrastructureKind.TERRAFORM, m.strip())
                for m in TERRAFORM_REFERENCE_PATTERN.findall(yaml_content)
            ]
        )

    for kind, raw_path in candidates:
        entry = (kind, _normalize_path(raw_path))
        if entry not in found:
            found.append(entry)

    if len(found) > MAX_TEMPLATES_PER_PIPELINE:
        logger.warning(
            "Too many template references, truncating",
            extra={"found": len(found), "limit": MAX_TEMPLATES_PER_PIPELINE},
        )
    return found[:MAX_TEMPLATES_PER_PIPELINE]


# =============================================================================
# ARM template parsing
# =============================================================================


class _ArmContext:
    """Parameter defaults and variables for resolving simple expressions."""

    def __init__(self, template: dict[str, Any]) -> None:
        self._parameters = {
            name: spec.get("defaultValue")
            for name, spec in (template.get("parameters") or {}).items()
            if isinstance(spec, dict)
        }
        self._variables = template.get("variables") or {}

    def resolve(self, value: Any) -> Any:
        """Resolve ``[parameters('x')]`` / ``[variables('x')]`` to a literal.

        Anything else in brackets yields UNRESOLVED.
        """
        if not isinstance(value, str) or not value.startswith("["):
            return value
        if value.startswith("[["):
            # Escaped literal bracket
            return value[1:]
        match = SIMPLE_EXPRESSION_PATTERN.match(value)
        if not match:
            return UNRESOLVED
        source = self._parameters if match.group(1).lower() == "parameters" else self._variables
        resolved = source.get(match.group(2))
        if resolved is None or (isinstance(resolved, str) and resolved.startswith("[")):
            return UNRESOLVED
        return resolved

    def resolve_tree(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {k: self.resolve_tree(v) for k, v in node.items()}
        if isinstance(node, list):
            return [self.resolve_tree(v) for v in node]
        return self.resolve(node)


# Marker for values that are template expressions we cannot evaluate
UNRESOLVED = "\x00unresolved"


def parse_arm_template(content: str, file_path: str = "") -> list[ExpectedResource]:
    """Extract declared resources from an ARM JSON template.

    Resources whose type or name cannot be resolved to a literal are skipped.
    Properties holding unresolvable expressions are left out of the bag.
    """
    try:
        template = json.loads(content)
    except ValueError as e:
        logger.warning("ARM template is not valid JSON", extra={"path": file_path, "error": str(e)})
        return []
    if not isinstance(template, dict):
        return []

    context = _ArmContext(template)
    resources: list[ExpectedResource] = []
    _collect_resources(template.get("resources"), context, "", "", resources)
    return resources


def _iter_resource_nodes(node: Any) -> Iterator[dict[str, Any]]:
    # languageVersion 2.0 templates use a symbolic-name mapping
    items = node.values() if isinstance(node, dict) else node or []
    for item in items:
        if isinstance(item, dict):
            yield item


def _collect_resources(
    node: Any,
    context: _ArmContext,
    parent_type: str,
    parent_name: str,
    out: list[ExpectedResource],
) -> None:
    for item in _iter_resource_nodes(node):
        resource_type = context.resolve(item.get("type"))
        name = context.resolve(item.get("name"))
        if (
            not isinstance(resource_type, str)
            or not isinstance(name, str)
            or UNRESOLVED in (resource_type, name)
            or not name
        ):
            logger.debug(
                "Skipping ARM resource with unresolved type or name",
                extra={"type": item.get("type"), "name": item.get("name")},
            )
            continue

        # Nested children may use short types and names
        if parent_type and "/" not in resource_type:
            resource_type = f"{parent_type}/{resource_type}"
        if parent_name and "/" not in name:
            name = f"{parent_name}/{name}"

        out.append(
            ExpectedResource(
                type=resource_type,
                name=name,
                declared_properties=_declared_properties(item, context),
            )
        )
        _collect_resources(item.get("resources"), context, resource_type, name, out)


def _contains_unresolved(node: Any) -> bool:
    if isinstance(node, dict):
        return any(_contains_unresolved(v) for v in node.values())
    if isinstance(node, list):
        return any(_contains_unresolved(v) for v in node)
    return node == UNRESOLVED


def _drop_unresolved(node: Any) -> Any:
    """Remove every entry whose value holds an unresolved expression.

    Objects are pruned key by key; arrays and scalars are kept or dropped
    whole because property bags store arrays as one value.
    """
    if not isinstance(node, dict):
        return node
    pruned: dict[str, Any] = {}
    for key, value in node.items():
        if isinstance(value, dict):
            kept = _drop_unresolved(value)
            if kept or not value:
                pruned[key] = kept
        elif not _contains_unresolved(value):
            pruned[key] = value
    return pruned


def _declared_properties(item: dict[str, Any], context: _ArmContext) -> dict[str, str]:
    declared: dict[str, str] = {}
    sections: tuple[tuple[str, Any], ...] = (
        ("", item.get("properties")),
        ("sku", item.get("sku")),
        ("kind", item.get("kind")),
        ("tags", item.get("tags")),
        ("identity", item.get("identity")),
        ("location", item.get("location")),
    )
    for prefix, raw in sections:
        if raw is None:
            continue
        resolved = context.resolve_tree(raw)
        if isinstance(resolved, dict):
            resolved = _drop_unresolved(resolved)
        elif _contains_unresolved(resolved):
            continue
        declared.update(flatten_properties(resolved, prefix))
    return declared
