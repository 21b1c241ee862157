from flask import Flask, jsonify, request
from flask_cors import CORS
import os
from flask_sqlalchemy import SQLAlchemy
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from dotenv import load_dotenv
import logging
from urllib.parse import quote_plus # Import quote_plus for URL encoding

load_dotenv()

db = SQLAlchemy()
limiter = Limiter(key_func=get_remote_address)

DEFAULT_STORAGE_QUOTA = 5 * 1024 * 1024 * 1024  # 5 GiB
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100 MiB


def _database_uri():
    """Build the database URI from DATABASE_URL or the individual DB_* variables."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    db_driver = os.getenv("DB_DRIVER", "mysql+mysqlconnector")
    db_user = os.getenv("DB_USER")
    db_pass = os.getenv("DB_PASSWORD")
    db_host = os.getenv("DB_HOST")
    db_port = os.getenv("DB_PORT", "3306") # Default to 3306 if not set
    db_name = os.getenv("DB_NAME")

    if not all([db_user, db_pass, db_host, db_name]):
        return None

    # URL-encode the password before including it in the URI
    encoded_db_pass = quote_plus(db_pass)
    return f'{db_driver}://{db_user}:{encoded_db_pass}@{db_host}:{db_port}/{db_name}'


def _engine_options(uri, timeout):
    options = {'pool_pre_ping': True}
    if uri.startswith('mysql'):
        options['pool_timeout'] = timeout
        options['connect_args'] = {'connection_timeout': timeout}
    return options


def create_app(config_name='default', overrides=None):
    app = Flask(__name__)

    # Configuration from environment variables
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY') or 'a-very-hard-to-guess-string'
    app.config['DEBUG'] = config_name == 'development'
    app.config['TESTING'] = config_name == 'testing'

    app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['DB_TIMEOUT'] = int(os.getenv('DB_TIMEOUT', 10))

    app.config['STORAGE_BACKEND'] = os.getenv('STORAGE_BACKEND', 's3')
    app.config['S3_BUCKET'] = os.getenv('S3_BUCKET')
    app.config['AWS_REGION'] = os.getenv('AWS_REGION', 'us-east-1')
    app.config['S3_ENDPOINT_URL'] = os.getenv('S3_ENDPOINT_URL')
    app.config['STORAGE_TIMEOUT'] = int(os.getenv('STORAGE_TIMEOUT', 10))
    app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER') or 'uploads'
    app.config['PRESIGNED_URL_TTL'] = int(os.getenv('PRESIGNED_URL_TTL', 3600))

    app.config['DEFAULT_STORAGE_QUOTA'] = int(os.getenv('DEFAULT_STORAGE_QUOTA', DEFAULT_STORAGE_QUOTA))
    app.config['MAX_CONTENT_LENGTH'] = int(os.getenv('MAX_FILE_SIZE', DEFAULT_MAX_FILE_SIZE))
    app.config['API_KEY_RATE_LIMIT'] = os.getenv('API_KEY_RATE_LIMIT', '10 per minute')
    app.config['WEBHOOK_SECRET'] = os.getenv('IDENTITY_WEBHOOK_SECRET')
    app.config['CORS_ORIGINS'] = os.getenv('CORS_ORIGINS', '*')
    app.config['RATELIMIT_ENABLED'] = config_name != 'testing'
    app.config['RATELIMIT_STORAGE_URI'] = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

    if overrides:
        app.config.update(overrides)

    if not app.config['SQLALCHEMY_DATABASE_URI']:
        # Raise a descriptive error if database environment variables are not set
        raise ValueError("DATABASE_URL or the DB_USER, DB_PASSWORD, DB_HOST, DB_NAME variables must be set.")

    app.config.setdefault(
        'SQLALCHEMY_ENGINE_OPTIONS',
        _engine_options(app.config['SQLALCHEMY_DATABASE_URI'], app.config['DB_TIMEOUT']),
    )

    CORS(app, origins=app.config['CORS_ORIGINS'], expose_headers=['Content-Disposition'])
    db.init_app(app)
    limiter.init_app(app)

    # Configure logging
    logging.basicConfig(level=logging.INFO)
    app.logger.setLevel(logging.INFO)

    # Import models so that they are known to SQLAlchemy
    from . import models

    from .storage import create_object_store
    from .identity import SessionIdentityProvider
    from .metrics import MetricsCollector
    app.extensions['cloudstore.storage'] = create_object_store(app.config)
    app.extensions['cloudstore.identity'] = SessionIdentityProvider()
    app.extensions['cloudstore.metrics'] = MetricsCollector()

    from .errors import register_error_handlers
    register_error_handlers(app)

    # Import and register blueprints
    from .auth import auth_bp
    from .files import files_bp, objects_bp
    from .users import users_bp
    from .keys import keys_bp
    from .health import health_bp
    app.register_blueprint(auth_bp, url_prefix='/api')
    app.register_blueprint(files_bp, url_prefix='/api/files')
    app.register_blueprint(objects_bp, url_prefix='/api/objects')
    app.register_blueprint(users_bp, url_prefix='/api/users')
    app.register_blueprint(keys_bp, url_prefix='/api/keys')
    app.register_blueprint(health_bp, url_prefix='/api/health')

    from .commands import register_commands
    register_commands(app)

    # Add a simple root route
    @app.route('/')
    def home():
        return jsonify({
            'status': 'running',
            'message': 'Cloud storage server is running',
            'endpoints': {
                'files': {
                    'list': '/api/files',
                    'upload': '/api/files/upload',
                    'folders': '/api/files/folders',
                    'info': '/api/files/<file_id>',
                    'download': '/api/files/<file_id>/download',
                    'url': '/api/files/<file_id>/url',
                    'update': '/api/files/<file_id>',
                    'delete': '/api/files/<file_id>'
                },
                'objects': '/api/objects',
                'users': {
                    'me': '/api/users/me',
                    'storage': '/api/users/me/storage'
                },
                'keys': {
                    'list': '/api/keys',
                    'create': '/api/keys',
                    'revoke': '/api/keys/<key_id>/revoke',
                    'delete': '/api/keys/<key_id>'
                },
                'health': '/api/health',
                'webhook': '/api/webhooks/identity'
            }
        })

    @app.before_request
    def log_request_info():
        client_ip = request.remote_addr
        app.logger.info(f"Request from IP: {client_ip} - {request.method} {request.path}")

    @app.after_request
    def count_request(response):
        app.extensions['cloudstore.metrics'].record_request(response.status_code)
        return response

    return app
