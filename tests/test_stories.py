"""Tests for loop story parsing, bounds and progress snapshots."""

from __future__ import annotations

import json
import math

import pytest

from stagehand.models import OperationStory, StoryStatus
from stagehand.stories import (
    build_loop_context,
    format_loop_notes,
    parse_bounded_int,
    parse_story_list,
    resolve_loop_max_stories,
)

RAW = [
    {"storyKey": "auth", "title": "Login form", "description": "Email + password",
     "acceptanceCriteria": ["rejects bad password", "  ", 7]},
    {"key": "reset", "title": "  Password reset  ", "acceptance_criteria": ["sends email"]},
    "not a story",
    {"summary": "Untitled work"},
]


class TestParseStoryList:
    def test_plain_list(self):
        stories = parse_story_list(RAW, 10)

        assert [s.story_key for s in stories] == ["auth", "reset", "story_4"]
        assert stories[0].acceptance_criteria == ["rejects bad password"]
        assert stories[1].title == "Password reset"
        assert stories[1].description == "Password reset"
        assert stories[1].acceptance_criteria == ["sends email"]
        assert stories[2].title == "Story 4"
        assert stories[2].description == "Untitled work"

    @pytest.mark.parametrize(
        "output",
        [
            {"stories": RAW},
            {"story_list": RAW},
            {"STORIES_JSON": json.dumps(RAW)},
        ],
        ids=["stories", "story_list", "STORIES_JSON"],
    )
    def test_wrapped_shapes(self, output):
        assert len(parse_story_list(output, 10)) == 3

    @pytest.mark.parametrize(
        "output",
        [None, "stories", {"STORIES_JSON": "not json"}, {"STORIES_JSON": "{}"}, {"other": []}],
    )
    def test_unrecognized_shapes_yield_nothing(self, output):
        assert parse_story_list(output, 10) == []

    def test_truncates(self):
        assert len(parse_story_list(RAW, 1)) == 1


class TestBounds:
    @pytest.mark.parametrize(
        "value,expected",
        [(5, 5), (7.9, 7), (1, 1), (50, 50), (0, None), (51, None), (True, None),
         ("5", None), (None, None), (math.inf, None), (math.nan, None)],
    )
    def test_parse_bounded_int(self, value, expected):
        assert parse_bounded_int(value, 1, 50) == expected

    def test_configured_value_without_overrides(self):
        assert resolve_loop_max_stories("build", 25, {}) == 25

    def test_global_override(self):
        assert resolve_loop_max_stories("build", 25, {"maxStoriesOverride": 4}) == 4

    def test_per_stage_override_wins(self):
        context = {"maxStoriesOverride": 4, "maxStoriesByStage": {"build": 9, "plan": 2}}

        assert resolve_loop_max_stories("build", 25, context) == 9

    def test_out_of_range_overrides_ignored(self):
        context = {"maxStoriesOverride": 0, "maxStoriesByStage": {"build": 99}}

        assert resolve_loop_max_stories("build", 25, context) == 25


def make_story(index, status=StoryStatus.PENDING, **overrides):
    defaults = {
        "id": f"story-{index}",
        "operation_id": "op-1",
        "work_order_id": "wo-1",
        "story_index": index,
        "story_key": f"s{index}",
        "title": f"Story {index}",
        "status": status,
    }
    defaults.update(overrides)
    return OperationStory(**defaults)


class TestLoopContext:
    def test_snapshot(self):
        stories = [
            make_story(0, StoryStatus.DONE),
            make_story(1, StoryStatus.RUNNING, description="Wire the API",
                       acceptance_criteria=["200 on success"],
                       output={"verify_feedback": "add a test"}),
            make_story(2),
        ]

        context = build_loop_context(stories, "story-1")

        assert context["current_story_id"] == "story-1"
        assert context["current_story"]["story_key"] == "s1"
        assert context["completed_stories"] == 1
        assert context["stories_remaining"] == 2
        assert context["verify_feedback"] == "add a test"

        notes = format_loop_notes(context)
        assert notes.splitlines() == [
            "Current story (2): Story 1",
            "Wire the API",
            "Acceptance criteria:",
            "- 200 on success",
            "Completed: 1, remaining: 2",
            "Previous verify feedback: add a test",
        ]

    def test_no_current_story(self):
        context = build_loop_context([make_story(0)], None)

        assert context["current_story"] is None
        assert format_loop_notes(context) == ""
