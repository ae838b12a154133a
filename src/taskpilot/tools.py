from __future__ import annotations

from collections.abc import Callable, Mapping
import logging

from taskpilot.config import ConfigError, ToolDescriptor
from taskpilot.fields import expand_template
from taskpilot.models import Item
from taskpilot.observability import log_event
from taskpilot.shell import run
from taskpilot.transform import parse_tool_output


LOGGER = logging.getLogger("taskpilot.tools")
McpCaller = Callable[[str, str, Mapping[str, object]], str]


class ToolConfigError(ConfigError):
    """A tool descriptor cannot be used to fetch items."""


class ToolInvoker:
    """Runs a source's tool and returns the raw records it produced."""

    def __init__(
        self,
        *,
        mcp_caller: McpCaller | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._mcp_caller = mcp_caller
        self._timeout_seconds = timeout_seconds

    def invoke(
        self,
        tool: ToolDescriptor,
        args: Mapping[str, object],
        *,
        source_name: str,
        response_key: str | None = None,
    ) -> list[Item]:
        text = self.invoke_raw(tool, args, source_name=source_name)
        records = parse_tool_output(
            text,
            response_key=tool.response_key or response_key,
            source=source_name,
        )
        log_event(
            LOGGER,
            "tool_invoked",
            source=source_name,
            tool=tool.describe(),
            record_count=len(records),
        )
        return records

    def check_supported(self, tool: ToolDescriptor, *, source_name: str) -> None:
        """Raise ``ToolConfigError`` when ``tool`` could never be invoked."""
        if tool.command is not None:
            return
        if tool.mcp is None or tool.name is None:
            raise ToolConfigError(f"Source {source_name!r} has an unusable tool descriptor: {tool!r}")
        if self._mcp_caller is None:
            raise ToolConfigError(
                f"Source {source_name!r} uses MCP server {tool.mcp!r}, but no MCP caller "
                "is available; use a command tool instead"
            )

    def invoke_raw(
        self, tool: ToolDescriptor, args: Mapping[str, object], *, source_name: str = ""
    ) -> str:
        if tool.command is not None:
            argv = build_command_argv(tool.command, args)
            return run(argv, timeout_seconds=self._timeout_seconds)
        self.check_supported(tool, source_name=source_name)
        return self._mcp_caller(tool.mcp, tool.name, args)  # type: ignore[misc, arg-type]


def build_command_argv(command: tuple[str, ...], args: Mapping[str, object]) -> list[str]:
    """Fill ``{arg}`` placeholders in each command part from the source args."""
    return [expand_template(part, args) for part in command]
