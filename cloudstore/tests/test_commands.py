import pytest
from sqlalchemy import inspect

from cloudstore import db, ledger, registry
from cloudstore.commands import drop_tables, schema_sql


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.mark.parametrize('dialect', ['mysql', 'postgresql', 'sqlite'])
def test_schema_sql_covers_every_table(dialect):
    sql = schema_sql(dialect)
    for table in ('users', 'files', 'api_keys'):
        assert f'CREATE TABLE {table}' in sql
    assert 'ON DELETE RESTRICT' in sql


def test_dump_schema_to_stdout(runner):
    result = runner.invoke(args=['dump-schema', '--dialect', 'sqlite'])
    assert result.exit_code == 0
    assert 'CREATE TABLE users' in result.output


def test_dump_schema_to_file(runner, tmp_path):
    output = tmp_path / 'schema.sql'
    result = runner.invoke(args=['dump-schema', '--output', str(output)])
    assert result.exit_code == 0
    assert 'CREATE TABLE files' in output.read_text()


def test_init_db(runner):
    result = runner.invoke(args=['init-db'])
    assert result.exit_code == 0
    assert 'Database tables created' in result.output


def test_set_quota(runner, alice):
    result = runner.invoke(args=['set-quota', 'user_alice', '1024'])
    assert result.exit_code == 0
    assert ledger.get_quota(alice).quota == 1024


def test_set_quota_unknown_user(runner):
    result = runner.invoke(args=['set-quota', 'user_nobody', '1024'])
    assert result.exit_code != 0
    assert 'not found' in result.output.lower()


def test_drop_db_with_nested_folders(runner, app, alice, store):
    docs = registry.create_folder(alice, 'docs')
    drafts = registry.create_folder(alice, 'drafts', parent_id=docs.id)
    registry.upload(alice, store, 'a.txt', b'a', folder_id=drafts.id)

    result = runner.invoke(args=['drop-db', '--yes'])
    assert result.exit_code == 0, result.output
    assert 'Database tables dropped' in result.output
    assert inspect(db.engine).get_table_names() == []


def test_drop_tables_twice(app):
    drop_tables()
    drop_tables()
    assert inspect(db.engine).get_table_names() == []
