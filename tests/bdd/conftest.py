"""
Shared fixtures and step definitions for BDD tests.

- runner, mock_queries, mock_actions, board_store, context: available to all
  scenario files in this directory
- no_logging: autouse, prevents log file creation during tests
- 'the output contains' / 'the command fails' steps: shared across features
"""

import pytest
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import then, parsers


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_queries():
    with patch("crmkit.cli.main.queries") as mock:
        yield mock


@pytest.fixture
def mock_actions():
    with patch("crmkit.cli.main.actions") as mock:
        yield mock


@pytest.fixture
def board_store():
    """Query and gateway modules as seen by a default-wired PipelineBoard."""
    with patch("crmkit.engine.pipeline.queries") as q, patch("crmkit.engine.pipeline.actions") as a:
        yield q, a


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("crmkit.cli.main.configure_logging"):
        yield


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )


@then("the command fails")
def command_fails(context):
    assert context["result"].exit_code == 1, context["result"].output


@then("the command succeeds")
def command_succeeds(context):
    assert context["result"].exit_code == 0, context["result"].output
