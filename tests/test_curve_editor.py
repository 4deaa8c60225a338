import numpy as np
import pytest

from curve_editor import HIT_RADIUS, CurveEditor
from stencil_lib import (
    CHANNEL_ALL,
    CHANNEL_RED,
    CHANNELS,
    IDENTITY_CURVE,
    STENCIL_RED_CURVE,
    CurvePoint,
    InvalidSettingsError,
    validate_curve,
)


def _assert_valid(editor: CurveEditor) -> None:
    for curves in (editor.draft, editor.committed):
        for curve in curves.values():
            validate_curve(curve)
            assert curve[0].x == 0
            assert curve[-1].x == 255


def test_defaults_to_stencil_curves_on_red_channel() -> None:
    editor = CurveEditor()
    assert editor.active_channel == CHANNEL_RED
    assert editor.points == STENCIL_RED_CURVE
    assert editor.committed[CHANNEL_ALL] == IDENTITY_CURVE


def test_press_inserts_point_in_sorted_position() -> None:
    editor = CurveEditor(active_channel=CHANNEL_ALL)
    index = editor.press(100, 40)
    assert index == 1
    assert editor.points == (CurvePoint(0, 0), CurvePoint(100, 40), CurvePoint(255, 255))
    assert editor.is_interacting
    # committed curves are untouched until release
    assert editor.committed[CHANNEL_ALL] == IDENTITY_CURVE


def test_press_near_point_grabs_it() -> None:
    editor = CurveEditor()
    index = editor.press(65 + HIT_RADIUS - 1, 15 - HIT_RADIUS + 1)
    assert index == 1
    assert editor.points == STENCIL_RED_CURVE


def test_press_with_same_x_moves_existing_point() -> None:
    editor = CurveEditor()
    index = editor.press(65, 120)
    assert index == 1
    assert editor.points[1] == CurvePoint(65, 120)
    assert len(editor.points) == 4


def test_press_clamps_coordinates() -> None:
    editor = CurveEditor(active_channel=CHANNEL_ALL)
    editor.press(128.4, 400)
    assert CurvePoint(128, 255) in editor.points


def test_drag_moves_interior_point_and_release_commits() -> None:
    editor = CurveEditor()
    editor.press(65, 15)
    editor.drag(80, 30)
    assert editor.points[1] == CurvePoint(80, 30)
    assert editor.committed[CHANNEL_RED] == STENCIL_RED_CURVE

    committed = editor.release()
    assert committed[CHANNEL_RED][1] == CurvePoint(80, 30)
    assert editor.committed is committed
    assert not editor.is_interacting


def test_endpoints_only_move_vertically() -> None:
    editor = CurveEditor(active_channel=CHANNEL_ALL)
    editor.press(0, 0)
    editor.drag(90, 60)
    assert editor.points[0] == CurvePoint(0, 60)
    editor.release()

    editor.press(255, 255)
    editor.drag(-40, 500)
    assert editor.points[-1] == CurvePoint(255, 255)
    _assert_valid(editor)


def test_interior_points_keep_away_from_endpoints() -> None:
    editor = CurveEditor(active_channel=CHANNEL_ALL)
    editor.press(128, 128)
    editor.drag(-50, 10)
    assert editor.points[1] == CurvePoint(1, 10)
    editor.drag(999, 10)
    assert editor.points[1] == CurvePoint(254, 10)
    _assert_valid(editor)


def test_dragging_past_neighbours_keeps_tracking_the_point() -> None:
    editor = CurveEditor()
    editor.press(65, 15)
    editor.drag(220, 100)
    assert editor.points == (CurvePoint(0, 0), CurvePoint(190, 240),
                             CurvePoint(220, 100), CurvePoint(255, 255))
    assert editor.grabbed_index == 2
    editor.drag(230, 110)
    assert editor.points[2] == CurvePoint(230, 110)


def test_drag_to_coincide_removes_other_point() -> None:
    editor = CurveEditor()
    editor.press(65, 15)
    editor.drag(190, 50)
    assert editor.points == (CurvePoint(0, 0), CurvePoint(190, 50), CurvePoint(255, 255))
    _assert_valid(editor)


def test_drag_without_press_is_ignored() -> None:
    editor = CurveEditor()
    editor.drag(100, 100)
    assert editor.draft is editor.committed


def test_cancel_restores_committed_curves() -> None:
    editor = CurveEditor()
    editor.press(120, 200)
    editor.cancel()
    assert editor.points == STENCIL_RED_CURVE
    assert not editor.is_interacting


def test_reset_channel() -> None:
    editor = CurveEditor()
    editor.press(120, 200)
    committed = editor.reset_channel()
    assert committed[CHANNEL_RED] == IDENTITY_CURVE
    assert editor.points == IDENTITY_CURVE
    assert not editor.is_interacting


def test_select_channel_releases_current_interaction() -> None:
    editor = CurveEditor()
    editor.press(120, 200)
    editor.select_channel(CHANNEL_ALL)
    assert not editor.is_interacting
    assert CurvePoint(120, 200) in editor.committed[CHANNEL_RED]
    assert editor.points == IDENTITY_CURVE

    with pytest.raises(InvalidSettingsError):
        editor.select_channel("blue")


def test_random_edits_never_break_the_curve() -> None:
    rng = np.random.default_rng(123)
    editor = CurveEditor()
    for _ in range(200):
        if rng.random() < 0.2:
            editor.select_channel(CHANNELS[int(rng.integers(0, 2))])
        editor.press(*rng.uniform(-20, 275, size=2))
        for _ in range(int(rng.integers(0, 5))):
            editor.drag(*rng.uniform(-20, 275, size=2))
            _assert_valid(editor)
        editor.release()
        _assert_valid(editor)


def test_as_dict() -> None:
    editor = CurveEditor()
    assert editor.as_dict() == {
        "all": [[0, 0], [255, 255]],
        "red": [[0, 0], [65, 15], [190, 240], [255, 255]],
    }
