import json

import pytest

from config import MigrationSettings
from conftest import sample_dataset, seed_store
from services import migration
from services.backup import create_restore_point
from services.dataset import COMPLETED_KEY, IN_PROGRESS_KEY, RESTORE_POINT_KEY
from services.remote import HttpRemoteWriter


@pytest.fixture()
def database(store):
    return str(store.database_file)


@pytest.fixture()
def fake_remote(monkeypatch, writer):
    monkeypatch.setattr(HttpRemoteWriter, 'from_settings', classmethod(lambda cls, settings: writer))
    monkeypatch.setattr(
        migration, 'load_settings', lambda: MigrationSettings(restore_point_grace_seconds=60.0)
    )
    return writer


def test_status_reports_pending_migration(store, database, capsys):
    seed_store(store, sample_dataset())

    assert migration.main(['--database', database, 'status']) == 0

    output = json.loads(capsys.readouterr().out)
    assert output['migrationNeeded'] is True
    assert output['stats']['suppliers'] == 2


def test_export_writes_backup_file(store, database, tmp_path, capsys):
    seed_store(store, sample_dataset())

    assert migration.main(['--database', database, 'export', '--output-dir', str(tmp_path / 'out')]) == 0

    written = list((tmp_path / 'out').glob('autocontrol-backup-*.json'))
    assert len(written) == 1
    assert json.loads(written[0].read_text(encoding='utf-8'))['data'] == sample_dataset()


def test_run_migrates_and_writes_backup(store, database, tmp_path, fake_remote, capsys):
    seed_store(store, sample_dataset())

    exit_code = migration.main(['--database', database, 'run', '--backup-dir', str(tmp_path / 'backups')])

    assert exit_code == 0
    assert store.get_item(COMPLETED_KEY) == 'true'
    assert len(list((tmp_path / 'backups').glob('*.json'))) == 1
    assert len(fake_remote.calls) == 12


def test_run_reports_failure_exit_code(store, database, fake_remote):
    seed_store(store, sample_dataset())
    fake_remote.failures['add_supplier'] = lambda record: record['name'] == 'Green Farm'

    assert migration.main(['--database', database, 'run', '--skip-backup']) == 1
    assert store.get_item(COMPLETED_KEY) is None


def test_run_with_nothing_to_migrate(database, fake_remote, capsys):
    assert migration.main(['--database', database, 'run', '--skip-backup']) == 0
    assert 'Nothing to migrate' in capsys.readouterr().out
    assert fake_remote.calls == []


def test_rollback_uses_restore_point(store, database):
    seed_store(store, sample_dataset())
    create_restore_point(store)
    store.remove_item('suppliers')

    assert migration.main(['--database', database, 'rollback']) == 0
    assert json.loads(store.get_item('suppliers')) == sample_dataset()['suppliers']
    assert store.get_item(RESTORE_POINT_KEY) is None


def test_rollback_without_source_fails(database):
    assert migration.main(['--database', database, 'rollback']) == 1


def test_rollback_and_import_from_file(store, database, tmp_path):
    backup_file = tmp_path / 'backup.json'
    backup_file.write_text(json.dumps({'timestamp': '2024-05-01T08:00:00+00:00', 'data': sample_dataset()}))

    assert migration.main(['--database', database, 'import', str(backup_file)]) == 0
    assert json.loads(store.get_item('deliveryRecords')) == sample_dataset()['deliveryRecords']

    store.remove_item('deliveryRecords')
    assert migration.main(['--database', database, 'rollback', '--from', str(backup_file)]) == 0
    assert json.loads(store.get_item('deliveryRecords')) == sample_dataset()['deliveryRecords']


def test_rollback_refused_while_a_migration_runs(store, database):
    seed_store(store, sample_dataset())
    create_restore_point(store)
    store.remove_item('suppliers')
    store.set_item(IN_PROGRESS_KEY, json.dumps({'token': 'other', 'operation': 'migration', 'pid': 1}))

    assert migration.main(['--database', database, 'rollback']) == 1
    assert store.get_item('suppliers') is None
    assert store.get_item(RESTORE_POINT_KEY) is not None


def test_run_refused_while_a_migration_runs(store, database, fake_remote):
    seed_store(store, sample_dataset())
    store.set_item(IN_PROGRESS_KEY, json.dumps({'token': 'other', 'operation': 'migration', 'pid': 1}))

    assert migration.main(['--database', database, 'run', '--skip-backup']) == 1
    assert fake_remote.calls == []
