"""Loop-stage story handling: parsing agent output, bounds, progress snapshots."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

from stagehand.models import OperationStory, StoryStatus

MIN_STORIES = 1
MAX_STORIES_CAP = 50


@dataclass
class ParsedStory:
    story_key: str
    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _to_stories(raw_stories: list[Any], max_stories: int) -> list[ParsedStory]:
    stories: list[ParsedStory] = []
    for index, raw in enumerate(raw_stories):
        if not isinstance(raw, dict):
            continue
        title = _text(raw.get("title")) or f"Story {index + 1}"
        criteria_raw = raw.get("acceptanceCriteria")
        if not isinstance(criteria_raw, list):
            criteria_raw = raw.get("acceptance_criteria")
        if not isinstance(criteria_raw, list):
            criteria_raw = []
        stories.append(
            ParsedStory(
                story_key=_text(raw.get("storyKey")) or _text(raw.get("key")) or f"story_{index + 1}",
                title=title,
                description=_text(raw.get("description")) or _text(raw.get("summary")) or title,
                acceptance_criteria=[
                    c.strip() for c in criteria_raw if isinstance(c, str) and c.strip()
                ],
            )
        )
    return stories[:max_stories]


def parse_story_list(output: Any, max_stories: int) -> list[ParsedStory]:
    """Extract stories from a loop stage's output.

    Accepted shapes: a list, ``{"stories": [...]}``, ``{"story_list": [...]}``,
    or ``{"STORIES_JSON": "<json array>"}``. Anything else yields no stories.
    Non-object entries are dropped; the result is truncated to ``max_stories``.
    """
    if isinstance(output, list):
        return _to_stories(output, max_stories)
    if not isinstance(output, dict):
        return []
    if isinstance(output.get("stories"), list):
        return _to_stories(output["stories"], max_stories)
    if isinstance(output.get("story_list"), list):
        return _to_stories(output["story_list"], max_stories)
    encoded = output.get("STORIES_JSON")
    if isinstance(encoded, str):
        try:
            decoded = json.loads(encoded)
        except ValueError:
            return []
        if isinstance(decoded, list):
            return _to_stories(decoded, max_stories)
    return []


def parse_bounded_int(value: Any, low: int, high: int) -> int | None:
    """Truncate a finite number to int; None if not a number or outside [low, high]."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    n = int(value)
    if n < low or n > high:
        return None
    return n


def resolve_loop_max_stories(
    stage_ref: str, configured: int, initial_context: dict[str, Any]
) -> int:
    """Story bound for a loop stage in this run.

    ``maxStoriesOverride`` applies to every loop stage; ``maxStoriesByStage[ref]``
    wins over it. Overrides outside [1, 50] are ignored.
    """
    resolved = configured

    override = parse_bounded_int(
        initial_context.get("maxStoriesOverride"), MIN_STORIES, MAX_STORIES_CAP
    )
    if override is not None:
        resolved = override

    by_stage = initial_context.get("maxStoriesByStage")
    if isinstance(by_stage, dict):
        raw = by_stage.get(stage_ref)
        if raw is None:
            raw = by_stage.get(stage_ref.strip().lower())
        stage_override = parse_bounded_int(raw, MIN_STORIES, MAX_STORIES_CAP)
        if stage_override is not None:
            resolved = stage_override

    return resolved


def build_loop_context(
    stories: list[OperationStory], current_story_id: str | None
) -> dict[str, Any]:
    """Progress snapshot sent with each loop dispatch."""
    current = next((s for s in stories if s.id == current_story_id), None)
    completed = sum(1 for s in stories if s.status == StoryStatus.DONE)
    verify_feedback = None
    if current is not None and current.output:
        feedback = current.output.get("verify_feedback")
        verify_feedback = feedback if isinstance(feedback, str) else None

    return {
        "current_story": (
            {
                "id": current.id,
                "story_index": current.story_index,
                "story_key": current.story_key,
                "title": current.title,
                "description": current.description,
                "acceptance_criteria": current.acceptance_criteria,
                "retry_count": current.retry_count,
            }
            if current
            else None
        ),
        "current_story_id": current.id if current else None,
        "completed_stories": completed,
        "stories_remaining": len(stories) - completed,
        "verify_feedback": verify_feedback,
    }


def format_loop_notes(loop_context: dict[str, Any]) -> str:
    """Human-readable story block appended to a loop dispatch's task text."""
    story = loop_context.get("current_story")
    if not story:
        return ""
    lines = [
        f"Current story ({story['story_index'] + 1}): {story['title']}",
        story["description"],
    ]
    if story["acceptance_criteria"]:
        lines.append("Acceptance criteria:")
        lines.extend(f"- {c}" for c in story["acceptance_criteria"])
    lines.append(
        f"Completed: {loop_context['completed_stories']}, "
        f"remaining: {loop_context['stories_remaining']}"
    )
    if loop_context.get("verify_feedback"):
        lines.append(f"Previous verify feedback: {loop_context['verify_feedback']}")
    return "\n".join(lines)
