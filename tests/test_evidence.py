import pytest

from core.errors import EvidenceOrderError
from core.evidence import find_references, render_plan, resolve_input, serialize_result
from core.state import Step


def test_find_references_in_order_without_duplicates():
    assert find_references("sum #E2 and #E1 and #E2") == ["#E2", "#E1"]
    assert find_references("") == []


def test_token_substitution_replaces_every_occurrence():
    assert resolve_input("multiply #E1 #E1", {"#E1": "18"}) == "multiply 18 18"


def test_token_substitution_does_not_touch_longer_ids():
    evidence = {f"#E{i}": str(i * 100) for i in range(1, 11)}
    assert resolve_input("#E10 and #E1", evidence) == "1000 and 100"


def test_literal_substitution_rewrites_prefixes():
    evidence = {"#E1": "x", "#E10": "y"}
    assert resolve_input("#E10", evidence, mode="literal") == "x0"


def test_input_without_references_is_unchanged():
    assert resolve_input("add 2 3", {"#E1": "5"}) == "add 2 3"
    assert resolve_input("add 2 3", None) == "add 2 3"


def test_missing_reference_raises_when_strict():
    with pytest.raises(EvidenceOrderError) as exc_info:
        resolve_input("multiply #E2 3", {"#E1": "4"})
    assert exc_info.value.step_ids == ["#E2"]


def test_missing_reference_left_in_place_when_not_strict():
    assert resolve_input("multiply #E2 3", {}, strict=False) == "multiply #E2 3"


def test_render_plan_substitutes_ids_and_inputs():
    steps = [
        Step("Multiply 3 by 6.", "#E1", "calculate", "multiply 3 6"),
        Step("Divide the result by 2.", "#E2", "calculate", "divide #E1 2"),
    ]
    rendered = render_plan(steps, {"#E1": "18", "#E2": "9"})
    assert rendered == (
        "Plan: Multiply 3 by 6.\n18 = calculate[multiply 3 6]\n"
        "Plan: Divide the result by 2.\n9 = calculate[divide 18 2]"
    )


@pytest.mark.parametrize(
    "value, expected",
    [("plain", "plain"), (18, "18"), ({"rows": [1]}, '{"rows": [1]}'), (None, "null")],
)
def test_serialize_result(value, expected):
    assert serialize_result(value) == expected
