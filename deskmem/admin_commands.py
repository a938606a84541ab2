"""
Operator commands ("/stats cust-1", "/archive", ...) for a tenant.

Commands are parsed into an `AdminCommand` and dispatched through
`COMMAND_HANDLERS`; unknown input never reaches a handler.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from deskmem.errors import ValidationIssue
from deskmem.services.archival import ArchivalPipeline
from deskmem.services.context_assembler import ContextAssembler
from deskmem.services.conversations import ConversationStore
from deskmem.services.learning import LearningEngine
from deskmem.services.profiles import ProfileRefresher

COMMAND_PREFIX = "/"


class AdminCommand(str, Enum):
    archive = "archive"
    stats = "stats"
    context = "context"
    patterns = "patterns"
    optimize = "optimize"
    refresh_profiles = "refresh-profiles"
    help = "help"


@dataclass
class AdminServices:
    conversations: ConversationStore
    context: ContextAssembler
    archival: ArchivalPipeline
    profiles: ProfileRefresher
    learning: LearningEngine


@dataclass
class ParsedCommand:
    command: AdminCommand
    args: list[str]


HELP_TEXT = {
    AdminCommand.archive: "/archive [customer_id] - archive conversations outside the retention window",
    AdminCommand.stats: "/stats <customer_id> [YYYY-MM] - conversation counts by category, priority, tag and state",
    AdminCommand.context: "/context <customer_id> - context quality and customer insights",
    AdminCommand.patterns: "/patterns [days] - interaction patterns and improvement suggestions",
    AdminCommand.optimize: "/optimize - prompt and threshold recommendations from the last 30 days",
    AdminCommand.refresh_profiles: "/refresh-profiles - refresh profiles with pending summaries",
    AdminCommand.help: "/help - list commands",
}


def parse_command(text: str) -> ParsedCommand:
    if not isinstance(text, str) or not text.strip().startswith(COMMAND_PREFIX):
        raise ValidationIssue("commands start with '/'", field="command", error_type="invalid_format")
    try:
        tokens = shlex.split(text.strip()[len(COMMAND_PREFIX):])
    except ValueError as exc:
        raise ValidationIssue(f"could not parse command: {exc}", field="command", error_type="invalid_format") from exc
    if not tokens:
        raise ValidationIssue("empty command", field="command", error_type="required")
    name = tokens[0].lower()
    try:
        command = AdminCommand(name)
    except ValueError as exc:
        raise ValidationIssue(f"unknown command: {name}", field="command", error_type="unknown_command") from exc
    return ParsedCommand(command=command, args=tokens[1:])


def _require_arg(args: list[str], index: int, name: str) -> str:
    if len(args) <= index:
        raise ValidationIssue(f"missing argument: {name}", field=name, error_type="required")
    return args[index]


def _int_arg(args: list[str], index: int, name: str, default: int) -> int:
    if len(args) <= index:
        return default
    try:
        return int(args[index])
    except ValueError as exc:
        raise ValidationIssue(f"{name} must be an integer", field=name, error_type="invalid_type") from exc


def _handle_archive(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    customer_id = args[0] if args else None
    return services.archival.run(tenant_id, customer_id=customer_id).to_dict()


def _handle_stats(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    customer_id = _require_arg(args, 0, "customer_id")
    period_key = args[1] if len(args) > 1 else None
    return services.conversations.conversation_statistics(tenant_id, customer_id, period_key)


def _handle_context(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    customer_id = _require_arg(args, 0, "customer_id")
    return services.context.customer_insights(tenant_id, customer_id)


def _handle_patterns(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    return services.learning.analyze_patterns(tenant_id, _int_arg(args, 0, "days", 7))


def _handle_optimize(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    return services.learning.optimize(tenant_id)


def _handle_refresh_profiles(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    return services.profiles.drain(tenant_id)


def _handle_help(services: AdminServices, tenant_id: str, args: list[str]) -> dict:
    return {"commands": [HELP_TEXT[command] for command in AdminCommand]}


COMMAND_HANDLERS: dict[AdminCommand, Callable[[AdminServices, str, list[str]], dict]] = {
    AdminCommand.archive: _handle_archive,
    AdminCommand.stats: _handle_stats,
    AdminCommand.context: _handle_context,
    AdminCommand.patterns: _handle_patterns,
    AdminCommand.optimize: _handle_optimize,
    AdminCommand.refresh_profiles: _handle_refresh_profiles,
    AdminCommand.help: _handle_help,
}


def execute(services: AdminServices, tenant_id: str, text: str, parsed: Optional[ParsedCommand] = None) -> dict:
    parsed = parsed or parse_command(text)
    result = COMMAND_HANDLERS[parsed.command](services, tenant_id, parsed.args)
    return {"command": parsed.command.value, "result": result}
