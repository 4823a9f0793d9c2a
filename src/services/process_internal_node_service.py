"""
Process Internal Node Service
Handles processing of internal nodes (condition, delay) that never wait for the contact.
"""
import re
import asyncio
from typing import Dict, Any, Optional, Callable, Awaitable

from utils.log_utils import LogUtil
from models.flow_data import ConditionNode, DelayNode

CONDITION_PATTERN = re.compile(r"(\w+)\s*(==|!=|>=|<=|>|<)\s*[\"']?([^\"']+)[\"']?")
MAX_DELAY_SECONDS = 30


def _to_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ProcessInternalNodeService:
    """
    Service for processing internal nodes (condition, delay)
    """

    def __init__(
        self,
        log_util: LogUtil,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.log_util = log_util
        self.sleep_func = sleep_func

    def evaluate_condition(self, expression: Optional[str], variables: Dict[str, Any]) -> bool:
        """
        Evaluate `variable <op> value`.
        == and != compare as strings, the ordering operators compare as numbers.
        A malformed expression or a non-numeric operand evaluates to False.
        """
        if not expression:
            return False

        match = CONDITION_PATTERN.search(expression)
        if not match:
            self.log_util.warning(
                service_name="ProcessInternalNodeService",
                message=f"[CONDITION] Malformed expression '{expression}', treating as false"
            )
            return False

        variable_name, operator, expected = match.group(1), match.group(2), match.group(3).strip()
        actual = variables.get(variable_name)

        if operator == "==":
            return actual is not None and str(actual) == expected
        if operator == "!=":
            return actual is None or str(actual) != expected

        actual_number = _to_number(actual)
        expected_number = _to_number(expected)
        if actual_number is None or expected_number is None:
            return False

        if operator == ">":
            return actual_number > expected_number
        if operator == "<":
            return actual_number < expected_number
        if operator == ">=":
            return actual_number >= expected_number
        if operator == "<=":
            return actual_number <= expected_number
        return False

    def resolve_condition_target(self, node: ConditionNode, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        Walk the branches in order; an else branch is taken as soon as it is reached.

        Returns:
            {"target_node_id": str | None, "matched": expression, "else" or None}
        """
        for condition in node.conditions:
            if condition.else_:
                return {"target_node_id": condition.goto, "matched": "else"}
            if self.evaluate_condition(condition.if_, variables):
                return {"target_node_id": condition.goto, "matched": condition.if_}
        return {"target_node_id": None, "matched": None}

    async def process_delay(self, node: DelayNode, show_typing: Optional[Callable[[], Awaitable[Any]]] = None) -> float:
        """
        Pause for the node's duration, showing the typing indicator first when enabled.

        Returns:
            The number of seconds actually waited
        """
        seconds = max(0.0, min(float(node.seconds or 0), MAX_DELAY_SECONDS))
        if node.typing_indicator and show_typing is not None:
            try:
                await show_typing()
            except Exception as e:
                self.log_util.warning(
                    service_name="ProcessInternalNodeService",
                    message=f"[DELAY] Typing indicator failed on node {node.id}: {str(e)}"
                )
        self.log_util.info(
            service_name="ProcessInternalNodeService",
            message=f"[DELAY] Waiting {seconds}s on node {node.id}"
        )
        await self.sleep_func(seconds)
        return seconds
