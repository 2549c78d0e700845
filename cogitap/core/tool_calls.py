"""Assembly of streamed tool-call fragments into complete calls."""

from dataclasses import dataclass, field

from cogitap.core.models import new_id
from cogitap.providers import ToolCall, ToolCallDelta


@dataclass
class _PartialCall:
    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects ToolCallDelta fragments keyed by their index.

    The first non-empty ``id`` and ``name`` seen for an index win; argument
    fragments are concatenated in arrival order.
    """

    def __init__(self):
        self._calls: dict[int, _PartialCall] = {}

    def add(self, delta: ToolCallDelta) -> bool:
        """Apply one delta.

        Returns:
            True if this delta supplied the call's name for the first time
        """
        call = self._calls.setdefault(delta.index, _PartialCall())
        if delta.id and not call.id:
            call.id = delta.id
        if delta.arguments:
            call.arguments.append(delta.arguments)
        if delta.name and not call.name:
            call.name = delta.name
            return True
        return False

    def calls(self) -> list[ToolCall]:
        """Named calls in index order. Calls that never got an id get one."""
        return [
            ToolCall(
                id=call.id or f"call_{new_id()}",
                name=call.name,
                arguments="".join(call.arguments),
            )
            for _, call in sorted(self._calls.items())
            if call.name
        ]
