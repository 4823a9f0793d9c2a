"""
Reply Validation Service
Resolves a contact's answer to a pending question node.
"""
from typing import Optional, Dict, Any, List

from utils.log_utils import LogUtil
from models.flow_data import NodeOption, QuestionNode


class ReplyValidationService:
    """
    Matches user replies against question options.

    Precedence, first applicable wins:
        1. button/list reply ID supplied by the channel, against option.id
        2. exact raw text against an option's stored value or id
        3. 1-based numeric index into the options
        4. case-insensitive exact match against label or value
        5. case-insensitive containment of a label in the message
    """

    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def resolve_option(self, options: List[NodeOption], message: str, button_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Returns:
            {"option": NodeOption, "rule": str} or None when unresolved
        """
        if not options:
            return None

        if button_id:
            for option in options:
                if option.id and option.id == button_id:
                    return {"option": option, "rule": "button_id"}

        raw = (message or "").strip()
        if not raw:
            return None

        for option in options:
            if raw == option.stored_value() or (option.id and raw == option.id):
                return {"option": option, "rule": "exact_value"}

        if raw.isdigit():
            index = int(raw) - 1
            if 0 <= index < len(options):
                return {"option": options[index], "rule": "index"}

        lowered = raw.lower()
        for option in options:
            if lowered == option.label.lower() or (option.value and lowered == option.value.lower()):
                return {"option": option, "rule": "label"}

        for option in options:
            if option.label and option.label.lower() in lowered:
                return {"option": option, "rule": "label_contains"}

        return None

    def resolve_answer(self, node: QuestionNode, message: str, button_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Resolve the reply to a question node.

        Returns:
            status "matched" with value and option, "free_text" with the raw text when
            the question has no options, or "mismatch_retry" when no option matched
        """
        if not node.options:
            return {"status": "free_text", "value": (message or "").strip(), "option": None, "rule": None}

        resolution = self.resolve_option(node.options, message, button_id)
        if resolution is None:
            self.log_util.info(
                service_name="ReplyValidationService",
                message=f"[REPLY_MATCH] ❌ Reply '{message}' matched none of {len(node.options)} options on node {node.id}"
            )
            return {"status": "mismatch_retry", "value": None, "option": None, "rule": None}

        option = resolution["option"]
        self.log_util.info(
            service_name="ReplyValidationService",
            message=f"[REPLY_MATCH] ✅ Reply '{message}' resolved to option '{option.label}' via {resolution['rule']} on node {node.id}"
        )
        return {"status": "matched", "value": option.stored_value(), "option": option, "rule": resolution["rule"]}
