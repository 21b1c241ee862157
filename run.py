import os
from cloudstore import create_app
import logging

config_name = os.environ.get('FLASK_CONFIG') or 'default'
app = create_app(config_name)

def print_endpoints():
    """Print all available endpoints when server starts."""
    print("\n=== Available Endpoints ===")

    # File endpoints
    print("\nFile Endpoints (/api/files):")
    print("  GET    /                    - List files and folders")
    print("  POST   /upload              - Upload new file")
    print("  POST   /folders             - Create folder")
    print("  GET    /<id>                - Get file metadata")
    print("  GET    /<id>/download       - Download file")
    print("  GET    /<id>/url            - Get time-limited download URL")
    print("  PATCH  /<id>                - Rename or move")
    print("  DELETE /<id>                - Delete file or empty folder")
    print("  GET    /api/objects         - Raw object listing")

    # User endpoints
    print("\nUser Endpoints (/api/users):")
    print("  GET /me                     - Current user profile")
    print("  GET /me/storage             - Storage usage and quota")

    # API key endpoints
    print("\nAPI Key Endpoints (/api/keys):")
    print("  GET    /                    - List API keys")
    print("  POST   /                    - Create API key")
    print("  POST   /<id>/revoke         - Revoke API key")
    print("  DELETE /<id>                - Delete API key")

    print("\nOther:")
    print("  GET  /api/health            - Health check")
    print("  POST /api/webhooks/identity - Identity provider webhook")

    print("\n==========================\n")

if __name__ == '__main__':
    # Configure logging
    logging.basicConfig(level=logging.INFO)

    # Print available endpoints
    print_endpoints()

    print(f"\n=== Cloud Storage Server ({config_name.capitalize()}) ===")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 6969)), debug=app.config['DEBUG'])
