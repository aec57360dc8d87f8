import json
import pytest
from config import JOB_COMPLETED, JOB_FAILED
from core.extractors import StaticGeoExtractor
from core.store import PlacementStore
from main import main, parse_arguments
from tests.fixtures import TestDataFixtures
from unittest.mock import patch


class TestCommandLine:
    """Test suite for the command line interface"""

    @pytest.fixture
    def cli_args(self, tmp_path):
        return ['--db', str(tmp_path / "geotour.db"), '--objects-dir', str(tmp_path / "objects")]

    def run(self, argv, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
        return exc_info.value.code, capsys.readouterr().out

    def test_parse_arguments(self):
        """Test argument defaults"""
        args = parse_arguments(['submit', 'a.jpg', 'b.mp4', '--owner', 'alice'])

        assert args.command == 'submit'
        assert args.targets == ['a.jpg', 'b.mp4']
        assert args.user == 'alice'
        assert args.visibility == 'private'

    def test_init_db(self, cli_args, capsys, tmp_path):
        """Test schema creation"""
        code, _ = self.run(['init-db', *cli_args], capsys)

        assert code == 0
        assert (tmp_path / "geotour.db").exists()

    @patch('core.orchestrator.default_extractor')
    def test_submit_and_list(self, mock_default, cli_args, capsys, tmp_path):
        """Test a full submission followed by listing and visibility changes"""
        mock_default.return_value = StaticGeoExtractor({'pano.jpg': TestDataFixtures.located(0, 2.0469, 45.3254)})
        media = TestDataFixtures.create_media_file(tmp_path / "uploads", 'pano.jpg')

        code, out = self.run(['submit', str(media), '--owner', 'alice', '--title', 'Beach', *cli_args], capsys)
        job = json.loads(out)
        assert code == 0
        assert job['state'] == JOB_COMPLETED

        code, out = self.run(['entities', '--requester', 'bob', *cli_args], capsys)
        assert code == 0
        assert json.loads(out) == []

        code, out = self.run(['set-visibility', job['tour_id'], 'public', '--requester', 'alice', *cli_args], capsys)
        assert code == 0
        assert json.loads(out)['visibility'] == 'public'

        code, out = self.run(['entities', '--requester', 'bob', *cli_args], capsys)
        entities = json.loads(out)
        assert [e['title'] for e in entities] == ['Beach - Stop 1']
        assert entities[0]['panorama_url'].startswith('file://')

    @patch('core.orchestrator.default_extractor')
    def test_submit_failure_exit_code(self, mock_default, cli_args, capsys, tmp_path):
        """Test that a failed job exits non-zero"""
        mock_default.return_value = StaticGeoExtractor({'pano.jpg': TestDataFixtures.no_gps()})
        media = TestDataFixtures.create_media_file(tmp_path / "uploads", 'pano.jpg')

        code, out = self.run(['submit', str(media), '--owner', 'alice', *cli_args], capsys)

        assert code == 1
        assert json.loads(out)['state'] == JOB_FAILED

    def test_status_and_errors(self, cli_args, capsys, tmp_path):
        """Test job status output and error exits"""
        store = PlacementStore(tmp_path / "geotour.db")
        tour = store.create_tour('alice', 'Tour')
        job = store.create_job(tour.id)
        store.close()

        code, out = self.run(['status', job.id, *cli_args], capsys)
        assert code == 0
        assert json.loads(out)['id'] == job.id

        code, _ = self.run(['status', 'missing-job', *cli_args], capsys)
        assert code == 1

        code, _ = self.run(['set-visibility', tour.id, 'public', '--requester', 'mallory', *cli_args], capsys)
        assert code == 1

        code, _ = self.run(['cancel', job.id, *cli_args], capsys)
        assert code == 0
