import pytest
from cloudstore import create_app, db, ledger
from cloudstore.commands import drop_tables
from cloudstore.identity import Identity


@pytest.fixture
def app(tmp_path):
    # Set up the Flask app with an in-memory SQLite database and a local object store
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'STORAGE_BACKEND': 'local',
        'UPLOAD_FOLDER': str(tmp_path / 'objects'),
        'SECRET_KEY': 'test-secret-key',
        'WEBHOOK_SECRET': 'test-webhook-secret',
    })
    with app.app_context():
        db.create_all()  # Create tables
        yield app
        drop_tables()  # Clean up tables after tests
        db.engine.dispose()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def store(app):
    return app.extensions['cloudstore.storage']


def make_identity(subject='user_alice', email=None, **profile):
    return Identity(subject=subject, email=email or f'{subject}@example.com', **profile)


@pytest.fixture
def alice(app):
    return ledger.upsert(make_identity('user_alice', first_name='Alice'))


@pytest.fixture
def bob(app):
    return ledger.upsert(make_identity('user_bob', first_name='Bob'))


@pytest.fixture
def login(client):
    """Sign the test client in as the given identity provider subject."""
    def sign_in(subject='user_alice', **profile):
        identity = make_identity(subject, **profile)
        with client.session_transaction() as sess:
            sess['identity'] = identity.to_claims()
        return identity
    return sign_in


@pytest.fixture
def alice_client(client, alice, login):
    login('user_alice', first_name='Alice')
    return client
