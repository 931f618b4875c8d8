"""Calculator tool: basic arithmetic on two numbers, run in-process."""

from __future__ import annotations

import logging
import math
from typing import Literal

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Operator = Literal["add", "subtract", "multiply", "divide", "power", "root"]


class CalculateInput(BaseModel):
    a: float = Field(description="The first operand")
    b: float = Field(description="The second operand (for roots, the degree of the root)")
    operator: Operator = Field(
        description=(
            "The arithmetic operation. For 'power', a is raised to the power of b. "
            "For 'root', the b-th root of a."
        )
    )


def _calculate(a: float, b: float, operator: Operator) -> int | float:
    if operator == "add":
        value = a + b
    elif operator == "subtract":
        value = a - b
    elif operator == "multiply":
        value = a * b
    elif operator == "divide":
        if b == 0:
            raise ValueError("Division by zero")
        value = a / b
    elif operator == "power":
        value = a**b
    elif operator == "root":
        if b == 0:
            raise ValueError("Root of degree zero")
        if a < 0 and float(b).is_integer() and int(b) % 2 == 1:
            value = -((-a) ** (1 / b))
        else:
            value = a ** (1 / b)
    else:
        raise ValueError(f"Unknown operator: {operator}")

    if isinstance(value, complex) or math.isnan(value):
        raise ValueError(f"No real result for {operator} {a} {b}")
    if math.isfinite(value) and float(value).is_integer():
        return int(value)
    return value


calculate = StructuredTool.from_function(
    func=_calculate,
    name="calculate",
    description="Perform basic arithmetic operations on two numbers, including powers and roots",
    args_schema=CalculateInput,
)
