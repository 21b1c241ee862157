from flask import Blueprint, request, jsonify, current_app, g, Response
from urllib.parse import quote

from . import registry
from .auth import permission_required
from .credentials import DELETE, READ, WRITE
from .errors import UnsupportedOperation, ValidationError
from .storage import LocalObjectStore

files_bp = Blueprint('files', __name__)
objects_bp = Blueprint('objects', __name__)


def object_store():
    return current_app.extensions['cloudstore.storage']


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No JSON data provided')
    return data


@files_bp.route('', methods=['GET'])
@permission_required(READ)
def list_files():
    """List the caller's files and folders.

    Query Parameters:
        folder_id: str - folder to list (default: root)
        recursive: "true" to list every file regardless of folder
        order: uploaded_at | name | size (default: uploaded_at)
        direction: asc | desc (default: desc)

    Returns:
        {
            "files": [ { "id", "name", "path", "is_folder", "parent_id", "size",
                         "content_type", "uploaded_at", "last_accessed" } ],
            "count": int
        }
    """
    entries = registry.list_entries(
        g.user,
        folder_id=request.args.get('folder_id') or None,
        recursive=request.args.get('recursive', '').lower() == 'true',
        order=request.args.get('order', 'uploaded_at'),
        direction=request.args.get('direction', 'desc'),
    )
    return jsonify({
        'files': [entry.to_dict() for entry in entries],
        'count': len(entries)
    }), 200


@files_bp.route('/upload', methods=['POST'])
@permission_required(WRITE)
def upload_file():
    """Upload a file as multipart form data.

    Form fields:
        file: the file (required)
        folder_id: destination folder (optional, default root)
        name: stored name (optional, default the uploaded filename)

    Error Responses:
        400: No file provided or invalid name
        404: Folder not found
        409: An entry with this name already exists in the folder
        413: Storage quota exceeded or file too large
        503: Object storage or database unavailable
    """
    upload = request.files.get('file')
    if upload is None:
        raise ValidationError('File is required')

    name = request.form.get('name') or upload.filename
    data = upload.read()
    entry = registry.upload(
        g.user,
        object_store(),
        name,
        data,
        content_type=upload.mimetype,
        folder_id=request.form.get('folder_id') or None,
    )
    return jsonify({'success': True, 'file': entry.to_dict()}), 201


@files_bp.route('/folders', methods=['POST'])
@permission_required(WRITE)
def create_folder():
    """Create a folder.

    Expected JSON payload:
    {
        "name": str,
        "parent_id": str (optional)
    }
    """
    data = _json_body()
    folder = registry.create_folder(g.user, data.get('name'), parent_id=data.get('parent_id'))
    return jsonify({'success': True, 'folder': folder.to_dict()}), 201


@files_bp.route('/<file_id>', methods=['GET'])
@permission_required(READ)
def get_file_info(file_id):
    entry = registry.get_entry(g.user, file_id)
    return jsonify(entry.to_dict()), 200


@files_bp.route('/<file_id>/download', methods=['GET'])
@permission_required(READ)
def download_file(file_id):
    """Stream a file's contents through the server."""
    entry, data = registry.read_file(g.user, object_store(), file_id)
    return Response(
        data,
        mimetype=entry.content_type or registry.DEFAULT_CONTENT_TYPE,
        headers={
            'Content-Disposition': f"attachment; filename*=UTF-8''{quote(entry.name)}",
            'Content-Length': str(len(data)),
        },
    )


@files_bp.route('/<file_id>/url', methods=['GET'])
@permission_required(READ)
def get_download_url(file_id):
    """Return a time-limited download URL.

    Returns:
        {
            "download_url": str,
            "file_name": str,
            "expires_in": int (seconds)
        }
    """
    expires_in = current_app.config['PRESIGNED_URL_TTL']
    entry, url = registry.download_url(g.user, object_store(), file_id, expires_in)
    return jsonify({
        'download_url': url,
        'file_name': entry.name,
        'expires_in': expires_in
    }), 200


@files_bp.route('/<file_id>', methods=['PATCH'])
@permission_required(WRITE)
def update_file(file_id):
    """Rename or move an entry.

    Expected JSON payload:
    {
        "operation": "rename" | "move",
        "name": str (rename),
        "target_folder_id": str | null (move, null means root)
    }

    Error Responses:
        400: Invalid operation, invalid name, or unsupported folder operation
        404: Entry or target folder not found
        409: An entry with this name already exists at the destination
    """
    data = _json_body()
    operation = data.get('operation')

    if operation == 'rename':
        entry = registry.rename(g.user, object_store(), file_id, data.get('name'))
    elif operation == 'move':
        entry = registry.move(g.user, object_store(), file_id, data.get('target_folder_id'))
    else:
        raise ValidationError('Invalid operation')

    return jsonify({'success': True, 'file': entry.to_dict()}), 200


@files_bp.route('/<file_id>', methods=['DELETE'])
@permission_required(DELETE)
def delete_file(file_id):
    """Delete a file, or a folder that has no children.

    Error Responses:
        404: Entry not found
        409: Folder is not empty
    """
    registry.remove(g.user, object_store(), file_id)
    return jsonify({'success': True}), 200


@files_bp.route('/blob/<token>', methods=['GET'])
def fetch_blob(token):
    """Serve a download link issued by the local object store.

    The signed token is the credential; no session or API key is needed.
    """
    store = object_store()
    if not isinstance(store, LocalObjectStore):
        raise UnsupportedOperation('Direct blob links are only served by the local backend')
    key = store.resolve_token(token)
    data = store.get(key)
    filename = key.rsplit('/', 1)[-1]
    return Response(
        data,
        mimetype=registry.DEFAULT_CONTENT_TYPE,
        headers={'Content-Disposition': f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@objects_bp.route('', methods=['GET'])
@permission_required(READ)
def list_objects():
    """List raw object store contents in the caller's namespace.

    Query Parameters:
        prefix: str - sub-path to list (default: root)

    Returns:
        {
            "folders": [str],
            "items": [ { "key": str, "size": int, "last_modified": float } ]
        }
    """
    listing = registry.browse(g.user, object_store(), request.args.get('prefix', ''))
    return jsonify(listing), 200
