import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from app.deps import build_services
from deskmem.admin_commands import COMMAND_HANDLERS, AdminCommand, execute, parse_command
from deskmem.errors import ValidationIssue


@pytest.fixture
def services(session_factory, clock, text_generator):
    return build_services(text_generator, session_factory, clock)


def test_every_command_has_a_handler():
    assert set(COMMAND_HANDLERS) == set(AdminCommand)


def test_parse_command():
    parsed = parse_command('  /stats "cust 1" 2024-05')
    assert parsed.command is AdminCommand.stats
    assert parsed.args == ["cust 1", "2024-05"]
    assert parse_command("/REFRESH-PROFILES").command is AdminCommand.refresh_profiles


@pytest.mark.parametrize("text", ["stats", "/", "/launch-rockets", '/stats "unterminated', None])
def test_parse_command_rejects_bad_input(text):
    with pytest.raises(ValidationIssue):
        parse_command(text)


def test_stats_requires_customer(services, tenant):
    with pytest.raises(ValidationIssue) as excinfo:
        execute(services, "acme", "/stats")
    assert excinfo.value.field == "customer_id"


def test_stats_and_context_commands(services, customer):
    services.conversations.ingest_message("acme", customer, {"role": "customer", "content": "refund please"})

    stats = execute(services, "acme", f"/stats {customer}")
    assert stats["command"] == "stats"
    assert stats["result"]["by_category"] == {"billing": 1}

    context = execute(services, "acme", f"/context {customer}")
    assert context["result"]["metrics"]["total_interactions"] == 1


def test_archive_patterns_optimize_and_refresh_commands(services, customer):
    assert execute(services, "acme", "/archive")["result"]["tenant_id"] == "acme"
    assert execute(services, "acme", "/patterns 30")["result"]["window_days"] == 30
    assert execute(services, "acme", "/optimize")["result"]["tenant_id"] == "acme"
    assert execute(services, "acme", "/refresh-profiles")["result"] == {"refreshed": 0, "errored": 0}
    with pytest.raises(ValidationIssue):
        execute(services, "acme", "/patterns soon")


def test_help_lists_every_command(services):
    commands = execute(services, "acme", "/help")["result"]["commands"]
    assert len(commands) == len(AdminCommand)
    assert commands[0].startswith("/archive")
