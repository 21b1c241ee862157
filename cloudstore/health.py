from flask import Blueprint, jsonify, current_app
from datetime import datetime, timezone
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import db

health_bp = Blueprint('health', __name__)


def _database_healthy():
    try:
        db.session.execute(text('SELECT 1'))
        return True
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Database health check failed: {e}")
        return False


@health_bp.route('', methods=['GET'])
def health_check():
    """Report the status of the database and object store.

    Returns:
        {
            "status": "healthy" | "degraded" | "unhealthy",
            "timestamp": str,
            "services": {"database": str, "storage": str},
            "metrics": {"uptime": int, "request_count": int, "status_counts": dict}
        }
        with HTTP 200 unless every service is down (503).
    """
    services = {
        'database': 'healthy' if _database_healthy() else 'unhealthy',
        'storage': 'healthy' if current_app.extensions['cloudstore.storage'].check() else 'unhealthy',
    }
    unhealthy = [name for name, status in services.items() if status == 'unhealthy']
    if not unhealthy:
        status = 'healthy'
    elif len(unhealthy) == len(services):
        status = 'unhealthy'
    else:
        status = 'degraded'

    return jsonify({
        'status': status,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'services': services,
        'metrics': current_app.extensions['cloudstore.metrics'].snapshot()
    }), 503 if status == 'unhealthy' else 200
