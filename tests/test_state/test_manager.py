"""Tests for the Redis state manager helpers that need no server."""

from typing import get_type_hints
from uuid import uuid4

from dispatch.state.manager import StateManager, _decode, _encode


def test_set_members_annotated_with_builtin_set() -> None:
    hints = get_type_hints(StateManager.smembers)

    assert hints["return"] == set[str]


def test_values_encoded_for_redis() -> None:
    marker = uuid4()

    assert _encode(marker) == str(marker)
    assert _decode(_encode({"id": str(marker), "stops": [1, 2]})) == {
        "id": str(marker),
        "stops": [1, 2],
    }
