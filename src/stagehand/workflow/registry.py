"""Workflow registry — loads and validates workflow YAML, selects workflows.

Layout under the config root::

    workflows/*.yaml           one WorkflowConfig per file
    workflow-selection.yaml    default workflow + ordered selection rules

Loaded definitions are cached for ``cache_ttl`` seconds (monotonic clock)
and reloaded early whenever any file's mtime or size changes.
``clear_cache()`` drops the cache explicitly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagehand.errors import UnknownWorkflowError, WorkflowConfigError
from stagehand.workflow.models import (
    SelectionReason,
    SelectionRule,
    WorkflowConfig,
    WorkflowSelection,
    WorkflowSelectionConfig,
)

logger = logging.getLogger(__name__)

WORKFLOW_CONFIG_DIR = "workflows"
WORKFLOW_SELECTION_FILE = "workflow-selection.yaml"
CACHE_TTL_SECONDS = 30.0


@dataclass
class _RegistrySnapshot:
    workflows: dict[str, WorkflowConfig]
    selection: WorkflowSelectionConfig
    version_key: str = ""
    loaded_at: float = field(default_factory=time.monotonic)


# ── Validation helpers ───────────────────────────────────────────────────────


def validate_selection_semantics(
    selection: WorkflowSelectionConfig, workflow_ids: set[str]
) -> None:
    """Check the default workflow, rule ids, and precedence targets.

    Raises:
        ValueError: On the first problem found.
    """
    if selection.default_workflow_id not in workflow_ids:
        raise ValueError(f"Default workflow {selection.default_workflow_id!r} is not defined")

    rule_ids: set[str] = set()
    for rule in selection.rules:
        if rule.id in rule_ids:
            raise ValueError(f"Duplicate workflow selection rule id: {rule.id}")
        rule_ids.add(rule.id)
        if rule.workflow_id not in workflow_ids:
            raise ValueError(
                f"Workflow selection rule {rule.id!r} references unknown workflow "
                f"{rule.workflow_id!r}"
            )

    for rule in selection.rules:
        for target in rule.precedes:
            if target not in rule_ids:
                raise ValueError(
                    f"Workflow selection rule {rule.id!r} precedes unknown rule {target!r}"
                )
            if target == rule.id:
                raise ValueError(f"Workflow selection rule {rule.id!r} cannot precede itself")


def order_rules_by_precedence(rules: list[SelectionRule]) -> list[SelectionRule]:
    """Topologically sort rules so each comes before every rule it ``precedes``.

    Ties are broken by declaration order. Raises ValueError on a cycle.
    """
    position = {rule.id: i for i, rule in enumerate(rules)}
    by_id = {rule.id: rule for rule in rules}
    outgoing: dict[str, set[str]] = {rule.id: set() for rule in rules}
    indegree: dict[str, int] = {rule.id: 0 for rule in rules}

    for rule in rules:
        for target in rule.precedes:
            if target in outgoing[rule.id] or target not in indegree:
                continue
            outgoing[rule.id].add(target)
            indegree[target] += 1

    ready = sorted((rid for rid, deg in indegree.items() if deg == 0), key=position.__getitem__)
    ordered: list[str] = []
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        for target in outgoing[current]:
            indegree[target] -= 1
            if indegree[target] == 0:
                ready.append(target)
        ready.sort(key=position.__getitem__)

    if len(ordered) != len(rules):
        unresolved = [rule.id for rule in rules if rule.id not in ordered]
        raise ValueError(
            f"Workflow selection precedence contains a cycle among: {', '.join(unresolved)}"
        )
    return [by_id[rid] for rid in ordered]


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def _keywords_match(text: str | None, keywords: list[str]) -> bool:
    if not keywords:
        return True
    haystack = _normalize(text)
    if not haystack:
        return False
    return any(kw and kw in haystack for kw in (_normalize(k) for k in keywords))


def _tags_match(tags: list[str] | None, tags_any: list[str]) -> bool:
    if not tags_any:
        return True
    have = {_normalize(t) for t in tags or [] if _normalize(t)}
    if not have:
        return False
    return any(_normalize(t) in have for t in tags_any if _normalize(t))


def rule_matches(
    rule: SelectionRule,
    *,
    priority: str | None = None,
    tags: list[str] | None = None,
    title: str | None = None,
    goal: str | None = None,
) -> bool:
    if rule.priority:
        wanted = _normalize(priority)
        if not wanted or wanted not in {_normalize(p) for p in rule.priority}:
            return False
    if not _tags_match(tags, rule.tags_any):
        return False
    if not _keywords_match(title, rule.title_keywords_any):
        return False
    return _keywords_match(goal, rule.goal_keywords_any)


# ── Registry ─────────────────────────────────────────────────────────────────


class WorkflowRegistry:
    """Read-only access to workflow definitions and selection rules."""

    def __init__(self, config_root: Path | str | None, cache_ttl: float = CACHE_TTL_SECONDS):
        self.config_root = Path(config_root) if config_root is not None else None
        self.cache_ttl = cache_ttl
        self._cache: _RegistrySnapshot | None = None

    @classmethod
    def from_configs(
        cls,
        workflows: list[WorkflowConfig] | list[dict[str, Any]],
        selection: WorkflowSelectionConfig | dict[str, Any] | None = None,
    ) -> WorkflowRegistry:
        """Build an in-memory registry (no files). Validates like the YAML path.

        Without a ``selection`` the first workflow becomes the default.
        """
        parsed = [w if isinstance(w, WorkflowConfig) else WorkflowConfig(**w) for w in workflows]
        if selection is None:
            selection = WorkflowSelectionConfig(default_workflow_id=parsed[0].id)
        elif isinstance(selection, dict):
            selection = WorkflowSelectionConfig(**selection)

        registry = cls(config_root=None)
        registry._cache = _build_snapshot(parsed, selection, source="<memory>")
        return registry

    # ── Loading ──────────────────────────────────────────────────────────

    def _files(self) -> tuple[list[Path], Path]:
        assert self.config_root is not None
        workflow_dir = self.config_root / WORKFLOW_CONFIG_DIR
        selection_path = self.config_root / WORKFLOW_SELECTION_FILE
        if not workflow_dir.is_dir() or not selection_path.is_file():
            raise WorkflowConfigError(f"Workflow config directory not found under {self.config_root}")
        files = sorted(
            p for p in workflow_dir.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml")
        )
        return files, selection_path

    @staticmethod
    def _version_key(paths: list[Path]) -> str:
        parts = []
        for p in paths:
            st = p.stat()
            parts.append(f"{p}:{st.st_mtime_ns}:{st.st_size}")
        return "|".join(sorted(parts))

    def _load(self, force: bool = False) -> _RegistrySnapshot:
        if self.config_root is None:
            if self._cache is None:
                raise WorkflowConfigError("In-memory workflow registry has no definitions")
            return self._cache

        files, selection_path = self._files()
        version_key = self._version_key([*files, selection_path])
        cached = self._cache
        if (
            not force
            and cached is not None
            and cached.version_key == version_key
            and time.monotonic() - cached.loaded_at < self.cache_ttl
        ):
            return cached

        if not files:
            raise WorkflowConfigError("No workflow YAML files found")

        workflows: list[WorkflowConfig] = []
        for path in files:
            raw = _read_yaml(path)
            try:
                workflow = WorkflowConfig(**raw)
            except (ValidationError, TypeError) as e:
                raise WorkflowConfigError(f"Workflow YAML invalid ({path}): {e}") from e
            workflows.append(workflow)

        raw_selection = _read_yaml(selection_path)
        try:
            selection = WorkflowSelectionConfig(**raw_selection)
        except (ValidationError, TypeError) as e:
            raise WorkflowConfigError(
                f"Workflow selection YAML invalid ({selection_path}): {e}"
            ) from e

        snapshot = _build_snapshot(workflows, selection, source=str(self.config_root))
        snapshot.version_key = version_key
        self._cache = snapshot
        logger.info(
            "Loaded %d workflows from %s (default=%s)",
            len(snapshot.workflows),
            self.config_root,
            selection.default_workflow_id,
        )
        return snapshot

    def clear_cache(self) -> None:
        """Forget loaded definitions; the next lookup re-reads the YAML files."""
        if self.config_root is not None:
            self._cache = None

    # ── Lookups ──────────────────────────────────────────────────────────

    def list_workflows(self, force_reload: bool = False) -> list[WorkflowConfig]:
        snapshot = self._load(force_reload)
        return sorted(snapshot.workflows.values(), key=lambda w: w.id)

    def get_selection_config(self, force_reload: bool = False) -> WorkflowSelectionConfig:
        return self._load(force_reload).selection

    def get_workflow_config(self, workflow_id: str, force_reload: bool = False) -> WorkflowConfig | None:
        return self._load(force_reload).workflows.get(workflow_id)

    def require_workflow_config(self, workflow_id: str) -> WorkflowConfig:
        """Like ``get_workflow_config`` but raises UnknownWorkflowError when missing."""
        workflow = self.get_workflow_config(workflow_id)
        if workflow is None:
            raise UnknownWorkflowError(workflow_id)
        return workflow

    def select_workflow(
        self,
        *,
        requested_workflow_id: str | None = None,
        priority: str | None = None,
        tags: list[str] | None = None,
        title: str | None = None,
        goal: str | None = None,
    ) -> WorkflowSelection:
        """Pick a workflow: explicit request, then first matching rule, then default.

        Raises:
            UnknownWorkflowError: If an explicitly requested workflow doesn't exist.
        """
        snapshot = self._load()

        requested = (requested_workflow_id or "").strip()
        if requested:
            if requested not in snapshot.workflows:
                raise UnknownWorkflowError(requested)
            return WorkflowSelection(workflow_id=requested, reason=SelectionReason.EXPLICIT)

        for rule in snapshot.selection.rules:
            if rule_matches(rule, priority=priority, tags=tags, title=title, goal=goal):
                return WorkflowSelection(
                    workflow_id=rule.workflow_id,
                    reason=SelectionReason.RULE,
                    matched_rule_id=rule.id,
                )

        return WorkflowSelection(
            workflow_id=snapshot.selection.default_workflow_id,
            reason=SelectionReason.DEFAULT,
        )


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise WorkflowConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise WorkflowConfigError(f"Expected a mapping at the top of {path}")
    return raw


def _build_snapshot(
    workflows: list[WorkflowConfig],
    selection: WorkflowSelectionConfig,
    source: str,
) -> _RegistrySnapshot:
    by_id: dict[str, WorkflowConfig] = {}
    try:
        for workflow in workflows:
            workflow.validate_semantics(source)
            if workflow.id in by_id:
                raise ValueError(f"Duplicate workflow id {workflow.id!r} found in {source}")
            by_id[workflow.id] = workflow

        validate_selection_semantics(selection, set(by_id))
        ordered = order_rules_by_precedence(selection.rules)
    except ValueError as e:
        raise WorkflowConfigError(str(e)) from e

    return _RegistrySnapshot(
        workflows=by_id,
        selection=selection.model_copy(update={"rules": ordered}),
    )
