"""Tests for the command line interface, using in-memory drivers."""

import json
import logging
import textwrap

import pytest
from click.testing import CliRunner

from stackpilot.cli.main import cli

TEMPLATE = """
    variables:
      Env: dev
    resources:
      Network:
        type: Test::Network
        properties:
          Cidr: 10.0.0.0/16
      Logs:
        type: Test::Bucket
        properties:
          Name: !Sub "logs-${Env}"
      Server:
        type: Test::Server
        properties:
          NetworkId: !Ref Network
          LogBucket: !GetAtt Logs.Name
    outputs:
      ServerId: !Ref Server
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def template(tmp_path):
    path = tmp_path / 'stack.yaml'
    path.write_text(textwrap.dedent(TEMPLATE))
    return str(path)


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / 'state' / 'state.json'


@pytest.fixture
def invoke(tmp_path, state_path):
    """Run the CLI against a temporary state file and no configuration file.

    Logging is limited to errors so that JSON output stays parseable when
    the runner mixes stderr into the output.
    """
    runner = CliRunner()

    def _invoke(*args, input=None):
        return runner.invoke(
            cli,
            [
                '--config', str(tmp_path / 'stackpilot.yaml'),
                '--state', str(state_path),
                '--log-level', 'error',
                *args
            ],
            obj={},
            input=input
        )

    return _invoke


class TestValidate:
    """Test the validate command."""

    def test_valid_template(self, invoke, template):
        result = invoke('validate', template, '--local')

        assert result.exit_code == 0, result.output
        assert 'Template is valid' in result.output
        assert '3 resources' in result.output

    def test_cycle_is_reported(self, invoke, tmp_path):
        """Test that validation runs cycle detection."""
        path = tmp_path / 'cycle.yaml'
        path.write_text(textwrap.dedent("""
            resources:
              A: {type: Test::Server, depends_on: [B]}
              B: {type: Test::Server, depends_on: [A]}
        """))

        result = invoke('validate', str(path), '--local')

        assert result.exit_code == 1
        assert 'PlanError' in result.output
        assert 'Circular dependency' in result.output

    def test_malformed_variable_option(self, invoke, template):
        result = invoke('validate', template, '--local', '--var', 'novalue')

        assert result.exit_code == 2
        assert 'KEY=VALUE' in result.output

    def test_invalid_configuration(self, tmp_path, template):
        """Test that configuration errors stop the CLI."""
        config = tmp_path / 'bad.yaml'
        config.write_text("concurrency: 0\n")

        result = CliRunner().invoke(cli, ['--config', str(config), 'validate', template, '--local'], obj={})

        assert result.exit_code == 1
        assert 'Configuration validation failed' in result.output


class TestPlanAndApply:
    """Test plan, apply and destroy against a local state file."""

    def test_plan_json_output(self, invoke, template):
        """Test machine-readable plans."""
        result = invoke('plan', template, '--local', '--json-output')

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data['summary'] == {'create': 3, 'update': 0, 'delete': 0, 'no-op': 0}
        assert [step['id'] for step in data['steps']] == ['Network', 'Logs', 'Server']
        assert data['steps'][2]['depends_on'] == ['Network', 'Logs']

    def test_apply_records_state(self, invoke, template, state_path):
        """Test a successful apply."""
        result = invoke('apply', template, '--local', '--auto-approve')

        assert result.exit_code == 0, result.output
        assert 'Apply complete' in result.output
        assert '3 to create' in result.output

        records = json.loads(state_path.read_text())['records']
        assert sorted(records) == ['Logs', 'Network', 'Server']
        assert records['Server']['resolved_properties']['LogBucket'] == 'logs-dev'

    def test_second_apply_has_nothing_to_do(self, invoke, template):
        invoke('apply', template, '--local', '--auto-approve')

        result = invoke('apply', template, '--local')

        assert result.exit_code == 0, result.output
        assert '3 unchanged' in result.output

    def test_apply_can_be_declined(self, invoke, template, state_path):
        """Test the confirmation prompt."""
        result = invoke('apply', template, '--local', input='n\n')

        assert result.exit_code == 0
        assert 'Apply cancelled' in result.output
        assert not state_path.exists()

    def test_variable_change_plans_update(self, invoke, template):
        """Test that a --var override changes the plan."""
        invoke('apply', template, '--local', '--auto-approve')

        result = invoke('plan', template, '--local', '--var', 'Env=prod', '--json-output')

        actions = {step['id']: step['action'] for step in json.loads(result.output)['steps']}
        assert actions == {'Network': 'no-op', 'Logs': 'update', 'Server': 'no-op'}

    def test_destroy_removes_everything(self, invoke, template, state_path):
        """Test destroy after apply."""
        invoke('apply', template, '--local', '--auto-approve')

        result = invoke('destroy', '--local', '--auto-approve')

        assert result.exit_code == 0, result.output
        assert '3 to delete' in result.output
        assert json.loads(state_path.read_text())['records'] == {}

    def test_pseudo_parameters_need_no_variables(self, invoke, tmp_path, state_path):
        """Test a CloudFormation template using AWS::Region and AWS::AccountId."""
        path = tmp_path / 'api.yml'
        path.write_text(textwrap.dedent("""
            Resources:
              Api:
                Type: Test::Server
                Properties:
                  Uri: !Sub "arn:aws:apigateway:${AWS::Region}:lambda:path/${AWS::AccountId}"
        """))

        result = invoke('--region', 'eu-west-1', 'apply', str(path), '--local', '--auto-approve')

        assert result.exit_code == 0, result.output
        records = json.loads(state_path.read_text())['records']
        assert records['Api']['resolved_properties'] == {
            'Uri': 'arn:aws:apigateway:eu-west-1:lambda:path/000000000000'
        }

    def test_destroy_with_empty_state(self, invoke):
        result = invoke('destroy', '--local', '--auto-approve')

        assert result.exit_code == 0
        assert 'No resources recorded in state' in result.output


class TestStateCommands:
    """Test state inspection."""

    def test_list_and_show(self, invoke, template):
        invoke('apply', template, '--local', '--auto-approve')

        listing = invoke('state', 'list')
        shown = invoke('state', 'show', 'Logs')

        assert listing.exit_code == 0
        assert 'Network' in listing.output
        assert shown.exit_code == 0
        assert json.loads(shown.output)['properties'] == {'Name': 'logs-dev'}

    def test_show_unknown_resource(self, invoke):
        result = invoke('state', 'show', 'Ghost')

        assert result.exit_code == 1
        assert 'not found in state' in result.output

    def test_list_empty_state(self, invoke):
        result = invoke('state', 'list')

        assert result.exit_code == 0
        assert 'No resources recorded' in result.output
