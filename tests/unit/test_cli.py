"""
Tests for qbt_automations.cli - server mode, client commands and main()
"""

import logging
import pytest
import requests
from argparse import Namespace
from unittest.mock import Mock, patch

from qbt_automations import cli
from qbt_automations.cli import (
    activity_command,
    api_request,
    apply_command,
    get_client_config,
    get_server_config,
    list_rules_command,
    main,
    preview_command,
    prune_activity_command,
    run_server_mode,
)
from qbt_automations.errors import APIError


@pytest.fixture(autouse=True)
def cli_logger(monkeypatch):
    """Commands log through the module logger set up by main()"""
    monkeypatch.setattr(cli, 'logger', logging.getLogger('qbt_automations.cli'))


@pytest.fixture
def config_obj():
    """Config with client settings"""
    return Mock(config={'client': {'server_url': 'http://server:5000/', 'api_key': 'secret'}})


def response(status=200, body=None, text=''):
    resp = Mock(status_code=status, text=text)
    resp.json.return_value = body or {}
    return resp


def client_args(**kwargs):
    values = {'client_server_url': None, 'client_api_key': None, 'limit': 25, 'offset': 0, 'days': 7}
    values.update(kwargs)
    return Namespace(**values)


# ============================================================================
# Configuration
# ============================================================================

class TestServerAndClientConfig:
    """Test config resolution for both modes"""

    def test_server_defaults(self):
        """Defaults apply when nothing is configured"""
        config = get_server_config(Namespace(), Mock(config={}))

        assert config == {
            'host': '0.0.0.0', 'port': 5000, 'api_key': None, 'workers': 1, 'scan_interval': 60.0
        }

    def test_server_args_win(self, monkeypatch):
        """CLI arguments beat env and config"""
        monkeypatch.setenv('QBT_AUTOMATIONS_SERVER_PORT', '6000')
        args = Namespace(server_host='127.0.0.1', server_port=8000, server_api_key='k',
                         server_workers=2, scan_interval=15.0)

        config = get_server_config(args, Mock(config={'server': {'port': 7000}}))

        assert config['port'] == 8000
        assert config['workers'] == 2
        assert config['scan_interval'] == 15.0

    def test_server_env_and_file(self, monkeypatch):
        """Environment variables beat config.yml"""
        monkeypatch.setenv('QBT_AUTOMATIONS_SCAN_INTERVAL', '30')
        config = get_server_config(Namespace(), Mock(config={'server': {'port': 7000},
                                                               'engine': {'scan_interval': 90}}))

        assert config['port'] == 7000
        assert config['scan_interval'] == 30.0

    def test_client_config(self, config_obj):
        """Client config comes from config.yml"""
        assert get_client_config(Namespace(), config_obj) == {
            'server_url': 'http://server:5000/', 'api_key': 'secret'
        }


# ============================================================================
# HTTP requests
# ============================================================================

class TestApiRequest:
    """Test api_request()"""

    @patch('qbt_automations.cli.requests.request')
    def test_sends_key_and_params(self, mock_request, config_obj):
        """The key is sent as a query parameter with the other params"""
        mock_request.return_value = response(body={'ok': True})

        result = api_request('GET', client_args(), config_obj, '/api/stats', params={'limit': 5})

        assert result == {'ok': True}
        mock_request.assert_called_once_with(
            'GET', 'http://server:5000/api/stats', params={'key': 'secret', 'limit': 5}, json=None, timeout=10
        )

    def test_missing_api_key(self):
        """No client key exits with status 1"""
        with pytest.raises(SystemExit) as exc:
            api_request('GET', client_args(), Mock(config={}), '/api/stats')
        assert exc.value.code == 1

    @patch('qbt_automations.cli.requests.request')
    def test_connection_error(self, mock_request, config_obj):
        """An unreachable server exits with status 1"""
        mock_request.side_effect = requests.exceptions.ConnectionError()

        with pytest.raises(SystemExit):
            api_request('GET', client_args(), config_obj, '/api/stats')

    @patch('qbt_automations.cli.requests.request')
    def test_unauthorized(self, mock_request, config_obj):
        """401 exits with status 1"""
        mock_request.return_value = response(401)

        with pytest.raises(SystemExit):
            api_request('GET', client_args(), config_obj, '/api/stats')

    @patch('qbt_automations.cli.requests.request')
    def test_error_status_raises(self, mock_request, config_obj):
        """Other error statuses raise APIError"""
        mock_request.return_value = response(409, text='{"error": "Conflict"}')

        with pytest.raises(APIError) as exc:
            api_request('POST', client_args(), config_obj, '/api/instances/1/rules/apply')
        assert exc.value.details['Status Code'] == 409


# ============================================================================
# Client commands
# ============================================================================

class TestCommands:
    """Test client commands"""

    @patch('qbt_automations.cli.requests.request')
    def test_apply(self, mock_request, config_obj, caplog):
        """apply posts to the instance and logs stats"""
        mock_request.return_value = response(body={'instanceId': 2, 'stats': {'total_torrents': 9, 'deleted': 1}})
        caplog.set_level(logging.INFO)

        apply_command(client_args(apply=2), config_obj)

        assert mock_request.call_args[0] == ('POST', 'http://server:5000/api/instances/2/rules/apply')
        assert 'Torrents: 9' in caplog.text
        assert 'Deleted: 1' in caplog.text

    @patch('qbt_automations.cli.requests.request')
    def test_preview(self, mock_request, config_obj, tmp_path, caplog):
        """preview sends the rule file and prints examples"""
        rule_file = tmp_path / 'rule.yml'
        rule_file.write_text('name: cleanup\ntrackerPattern: "*"\nratioLimit: 2\ndeleteMode: delete\n')
        mock_request.return_value = response(body={'totalMatches': 1, 'examples': [{
            'name': 'Some.Torrent', 'size': 1073741824, 'ratio': 2.5, 'seedingTime': 3660,
            'actions': [{'type': 'delete'}]
        }]})
        caplog.set_level(logging.INFO)

        preview_command(client_args(preview=1, rule_file=rule_file, limit=5), config_obj)

        kwargs = mock_request.call_args[1]
        assert kwargs['json']['name'] == 'cleanup'
        assert kwargs['params']['limit'] == 5
        assert "'cleanup' matches 1 torrent(s)" in caplog.text
        assert '1.00 GB' in caplog.text
        assert '1h 1m' in caplog.text

    def test_preview_requires_rule_file(self, config_obj):
        """preview without --rule-file exits"""
        with pytest.raises(SystemExit):
            preview_command(client_args(preview=1, rule_file=None), config_obj)

    @patch('qbt_automations.cli.requests.request')
    def test_list_rules(self, mock_request, config_obj, caplog):
        """Rules are listed with their kind"""
        mock_request.return_value = response(body={'rules': [
            {'id': 4, 'sortOrder': 1, 'enabled': True, 'name': 'limits', 'trackerPattern': 'example.com'},
            {'id': 5, 'sortOrder': 2, 'enabled': False, 'name': 'tagger', 'conditions': {'schemaVersion': '1'}},
        ]})
        caplog.set_level(logging.INFO)

        list_rules_command(client_args(list_rules=1), config_obj)

        assert 'Rules (2 total' in caplog.text
        assert 'expression' in caplog.text
        assert 'example.com' in caplog.text

    @patch('qbt_automations.cli.requests.request')
    def test_list_rules_empty(self, mock_request, config_obj, caplog):
        mock_request.return_value = response(body={'rules': []})
        caplog.set_level(logging.INFO)

        list_rules_command(client_args(list_rules=1), config_obj)

        assert 'No rules defined' in caplog.text

    @patch('qbt_automations.cli.requests.request')
    def test_activity(self, mock_request, config_obj, caplog):
        """Activity rows include the reason"""
        mock_request.return_value = response(body={'activity': [{
            'createdAt': '2024-06-01T12:00:00+00:00', 'action': 'deleted_ratio', 'outcome': 'success',
            'ruleName': 'cleanup', 'torrentName': 'Some.Torrent', 'reason': 'ratio limit reached'
        }]})
        caplog.set_level(logging.INFO)

        activity_command(client_args(activity=1, limit=10), config_obj)

        assert mock_request.call_args[1]['params']['limit'] == 10
        assert 'deleted_ratio' in caplog.text
        assert 'reason: ratio limit reached' in caplog.text

    @patch('qbt_automations.cli.requests.request')
    def test_prune_activity(self, mock_request, config_obj, caplog):
        """prune sends days and reports the count"""
        mock_request.return_value = response(body={'deleted': 3})
        caplog.set_level(logging.INFO)

        prune_activity_command(client_args(prune_activity=1, days=30), config_obj)

        assert mock_request.call_args[0][0] == 'DELETE'
        assert mock_request.call_args[1]['params']['days'] == 30
        assert 'Deleted 3 activity record(s) older than 30 day(s)' in caplog.text


# ============================================================================
# Server mode
# ============================================================================

class TestServerMode:
    """Test run_server_mode()"""

    def test_requires_api_key(self):
        """Server mode without an API key exits"""
        with pytest.raises(SystemExit) as exc:
            run_server_mode(Namespace(), Mock(config={}))
        assert exc.value.code == 1

    @patch('qbt_automations.server.run_server')
    @patch('qbt_automations.worker.ScanWorker')
    @patch('qbt_automations.service.AutomationService.from_config')
    def test_starts_worker_and_server(self, from_config, worker_class, run_server):
        """Server mode wires service, worker and app together"""
        service = from_config.return_value
        service.list_instances.return_value = [{'id': 1, 'name': 'seedbox', 'host': 'http://a'}]
        config_obj = Mock(config={'server': {'api_key': 'k', 'port': 5050}})
        config_obj.get.return_value = False

        run_server_mode(Namespace(), config_obj)

        worker_class.assert_called_once_with(service=service, scan_interval=60.0)
        worker_class.return_value.start.assert_called_once()
        assert run_server.call_args[1]['port'] == 5050
        assert run_server.call_args[1]['log_http_access'] is False

    @patch('qbt_automations.server.run_server', side_effect=KeyboardInterrupt)
    @patch('qbt_automations.worker.ScanWorker')
    @patch('qbt_automations.service.AutomationService.from_config')
    def test_ctrl_c_stops_worker(self, from_config, worker_class, run_server):
        """Ctrl-C stops the worker and closes the service"""
        from_config.return_value.list_instances.return_value = []
        config_obj = Mock(config={'server': {'api_key': 'k'}})
        config_obj.get.return_value = False

        run_server_mode(Namespace(), config_obj)

        worker_class.return_value.stop.assert_called_once()
        from_config.return_value.close.assert_called_once()


# ============================================================================
# main()
# ============================================================================

class TestMain:
    """Test the main() entry point"""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self):
        with patch('qbt_automations.cli.setup_logging'):
            yield

    def test_no_command_prints_help(self, tmp_config_dir, monkeypatch, capsys):
        """Without a command main prints help and exits 1"""
        monkeypatch.setattr('sys.argv', ['qbt-automations', '--config-dir', str(tmp_config_dir)])

        with pytest.raises(SystemExit) as exc:
            main()

        assert exc.value.code == 1
        assert 'usage: qbt-automations' in capsys.readouterr().out

    def test_validate(self, tmp_config_dir, monkeypatch):
        """--validate exits 0 for valid rules"""
        monkeypatch.setattr('sys.argv', ['qbt-automations', '--config-dir', str(tmp_config_dir), '--validate'])

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0

    @patch('qbt_automations.cli.requests.request')
    def test_apply_dispatch(self, mock_request, tmp_config_dir, monkeypatch):
        """--apply sends a request and exits 0"""
        mock_request.return_value = response(body={'instanceId': 1, 'stats': {}})
        monkeypatch.setenv('QBT_AUTOMATIONS_CLIENT_API_KEY', 'secret')
        monkeypatch.setattr('sys.argv', ['qbt-automations', '--config-dir', str(tmp_config_dir), '--apply', '1'])

        with pytest.raises(SystemExit) as exc:
            main()

        assert exc.value.code == 0
        assert mock_request.call_args[0][1] == 'http://localhost:5000/api/instances/1/rules/apply'

    @patch('qbt_automations.cli.requests.request')
    def test_api_error_exits_1(self, mock_request, tmp_config_dir, monkeypatch):
        """Server errors are reported and exit 1"""
        mock_request.return_value = response(404, text='not found')
        monkeypatch.setenv('QBT_AUTOMATIONS_CLIENT_API_KEY', 'secret')
        monkeypatch.setattr('sys.argv', ['qbt-automations', '--config-dir', str(tmp_config_dir),
                                         '--list-rules', '9'])

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1

    def test_missing_config_exits_1(self, tmp_path, monkeypatch):
        """A missing config.yml exits 1"""
        monkeypatch.setattr('sys.argv', ['qbt-automations', '--config-dir', str(tmp_path / 'none')])

        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1
