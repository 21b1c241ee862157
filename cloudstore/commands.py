import click
from sqlalchemy import inspect, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.schema import CreateTable

from . import db, ledger
from .errors import CloudStoreError
from .models import File

DIALECTS = {
    'mysql': mysql.dialect,
    'postgresql': postgresql.dialect,
    'sqlite': sqlite.dialect,
}


def schema_sql(dialect_name='mysql'):
    """CREATE TABLE statements for every model, compiled for ``dialect_name``."""
    dialect = DIALECTS[dialect_name]()
    statements = []
    # Iterate over all tables in the metadata and generate CREATE TABLE statements
    for table in db.metadata.sorted_tables:
        statements.append(str(CreateTable(table).compile(dialect=dialect)).strip() + ";")
    return "\n\n".join(statements) + "\n"


def drop_tables():
    """Drop every table, including folders that still have children."""
    db.session.rollback()
    if inspect(db.engine).has_table(File.__tablename__):
        # files.parent_id is ON DELETE RESTRICT, so detach children before the drop
        db.session.execute(update(File).values(parent_id=None))
        db.session.commit()
    db.session.remove()
    db.drop_all()


def register_commands(app):
    @app.cli.command('init-db')
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("Database tables created")

    @app.cli.command('drop-db')
    @click.confirmation_option(prompt='Drop every table and all metadata?')
    def drop_db():
        """Drop all tables."""
        drop_tables()
        click.echo("Database tables dropped")

    @app.cli.command('dump-schema')
    @click.option('--dialect', type=click.Choice(sorted(DIALECTS)), default='mysql')
    @click.option('--output', type=click.Path(dir_okay=False), default=None,
                  help='Write to this file instead of stdout.')
    def dump_schema(dialect, output):
        """Print the SQL schema for the models."""
        sql = schema_sql(dialect)
        if output:
            with open(output, 'w') as f:
                f.write(sql)
            click.echo(f"SQL schema written to {output}")
        else:
            click.echo(sql, nl=False)

    @app.cli.command('set-quota')
    @click.argument('subject')
    @click.argument('quota', type=int)
    def set_quota(subject, quota):
        """Set the storage quota (bytes) of the user with identity SUBJECT."""
        try:
            ledger.set_quota(subject, quota)
        except CloudStoreError as e:
            raise click.ClickException(e.message)
        click.echo(f"Quota for {subject} set to {quota} bytes")
