"""
Tests for the command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from cli import main

from .conftest import embedding, face, make_jpeg, payload


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def media_dir(tmp_path):
    directory = tmp_path / 'shoot'
    directory.mkdir()
    for name in ('interview.jpg', 'street.jpg'):
        (directory / name).write_bytes(make_jpeg())
    (directory / 'interview.jpg.detections.json').write_text(json.dumps(
        payload(objects={'person': 0.95}, scenes={'outdoor': 0.8}, faces=[face(embedding(1.0))])))
    (directory / 'notes.bin').write_bytes(b'ignored')
    return directory


def invoke(runner, library_dir, *args):
    return runner.invoke(main, ['--quiet', '--library', str(library_dir), *args],
                         catch_exceptions=False)


class TestCli:
    """Test the docusight command group."""

    def test_version(self, runner):
        result = runner.invoke(main, ['version'])
        assert result.exit_code == 0
        assert 'DocuSight 0.1.0' in result.output

    def test_ingest_then_search(self, runner, media_dir, tmp_path):
        library_dir = tmp_path / 'library'
        assert invoke(runner, library_dir, 'ingest', str(media_dir)).exit_code == 0

        result = invoke(runner, library_dir, 'search', '--tag', 'outdoor', '--format', 'json')
        assert result.exit_code == 0
        found = json.loads(result.output)
        assert [a['filename'] for a in found] == ['interview.jpg']
        assert found[0]['faces'][0]['person_id']

    def test_stats_json(self, runner, media_dir, tmp_path):
        library_dir = tmp_path / 'library'
        invoke(runner, library_dir, 'ingest', str(media_dir))
        result = invoke(runner, library_dir, 'stats', '--format', 'json')
        summary = json.loads(result.output)
        assert summary['total_assets'] == 2
        assert summary['persons'] == 1

    def test_people_and_export(self, runner, media_dir, tmp_path):
        library_dir = tmp_path / 'library'
        invoke(runner, library_dir, 'ingest', str(media_dir))
        listing = invoke(runner, library_dir, 'people')
        assert '1 faces' in listing.output

        output = tmp_path / 'export.json'
        assert invoke(runner, library_dir, 'export', str(output)).exit_code == 0
        assert len(json.loads(output.read_text())['assets']) == 2

    def test_empty_directory(self, runner, tmp_path):
        empty = tmp_path / 'empty'
        empty.mkdir()
        result = invoke(runner, tmp_path / 'library', 'ingest', str(empty))
        assert 'No media files' in result.output

    def test_reingest_skips_known_files(self, runner, media_dir, tmp_path):
        library_dir = tmp_path / 'library'
        invoke(runner, library_dir, 'ingest', str(media_dir))
        (media_dir / 'harbor.jpg').write_bytes(make_jpeg())

        result = runner.invoke(main, ['--library', str(library_dir), 'ingest', str(media_dir)],
                               catch_exceptions=False)
        assert result.exit_code == 0
        assert 'Skipped:          2 (already ingested)' in result.output

        summary = json.loads(invoke(runner, library_dir, 'stats', '--format', 'json').output)
        assert summary['total_assets'] == 3
        assert summary['persons'] == 1

    def test_failure_codes_in_summary(self, runner, media_dir, tmp_path):
        (media_dir / 'broken.jpg').write_bytes(b'not really a jpeg')
        result = runner.invoke(main, ['--library', str(tmp_path / 'library'), 'ingest', str(media_dir)],
                               catch_exceptions=False)
        assert result.exit_code == 0
        assert '  - CORRUPT_INPUT: 1' in result.output

    def test_people_verify(self, runner, media_dir, tmp_path):
        library_dir = tmp_path / 'library'
        invoke(runner, library_dir, 'ingest', str(media_dir))
        person = json.loads(invoke(runner, library_dir, 'search', '--tag', 'outdoor',
                                   '--format', 'json').output)[0]['faces'][0]['person_id']

        assert invoke(runner, library_dir, 'people', 'verify', person).exit_code == 0
        listing = invoke(runner, library_dir, 'people')
        assert '(verified)' in listing.output
