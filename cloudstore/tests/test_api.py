import io
import json

import pytest

from cloudstore import credentials, db, ledger, registry
from cloudstore.identity import sign_webhook_payload
from cloudstore.models import File


def upload(client, name='hello.txt', data=b'hello world', **form):
    form['file'] = (io.BytesIO(data), name, 'text/plain')
    return client.post('/api/files/upload', data=form, content_type='multipart/form-data')


def key_headers(user, permissions=None):
    _, plaintext = credentials.create_key(user.id, 'test key', permissions=permissions)
    return {'X-API-Key': plaintext}


def test_root_lists_endpoints(client):
    response = client.get('/')
    assert response.status_code == 200
    data = response.get_json()
    assert data['status'] == 'running'
    assert data['endpoints']['files']['upload'] == '/api/files/upload'


def test_files_require_authentication(client):
    response = client.get('/api/files')
    assert response.status_code == 401
    data = response.get_json()
    assert data['kind'] == 'unauthenticated'
    assert data['error'] == 'You must be logged in to access this resource'


def test_first_request_registers_user(client, login):
    login('user_new', first_name='New')
    response = client.get('/api/users/me')
    assert response.status_code == 200
    data = response.get_json()
    assert data['email'] == 'user_new@example.com'
    assert data['first_name'] == 'New'
    assert data['auth_type'] == 'session'
    assert data['permissions'] == ['delete', 'read', 'write']
    assert ledger.resolve('user_new') is not None


def test_upload_list_download_delete(alice_client, alice):
    response = upload(alice_client)
    assert response.status_code == 201
    data = response.get_json()
    assert data['success'] is True
    file_id = data['file']['id']
    assert data['file']['size'] == 11
    assert data['file']['content_type'] == 'text/plain'

    response = alice_client.get('/api/files')
    assert response.status_code == 200
    data = response.get_json()
    assert data['count'] == 1
    assert data['files'][0]['name'] == 'hello.txt'

    response = alice_client.get(f'/api/files/{file_id}/download')
    assert response.status_code == 200
    assert response.data == b'hello world'
    assert 'hello.txt' in response.headers['Content-Disposition']

    response = alice_client.get('/api/users/me/storage')
    assert response.get_json()['used'] == 11

    response = alice_client.delete(f'/api/files/{file_id}')
    assert response.status_code == 200
    assert response.get_json() == {'success': True}
    assert alice_client.get('/api/users/me/storage').get_json()['used'] == 0
    assert alice_client.get(f'/api/files/{file_id}').status_code == 404


def test_upload_without_file(alice_client):
    response = alice_client.post('/api/files/upload', data={}, content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'File is required'


def test_upload_duplicate_name(alice_client):
    upload(alice_client)
    response = upload(alice_client)
    assert response.status_code == 409
    assert response.get_json()['kind'] == 'conflict'


def test_upload_over_quota(alice_client, alice):
    alice.storage_quota = 10
    db.session.commit()

    response = upload(alice_client, data=b'x' * 20)
    assert response.status_code == 413
    assert response.get_json()['kind'] == 'quota_exceeded'
    assert File.query.count() == 0


def test_upload_larger_than_max_content_length(app, alice_client):
    app.config['MAX_CONTENT_LENGTH'] = 64
    response = upload(alice_client, data=b'x' * 1024)
    assert response.status_code == 413
    assert response.get_json()['kind'] == 'too_large'


def test_storage_info(alice_client, alice):
    response = alice_client.get('/api/users/me/storage')
    assert response.status_code == 200
    data = response.get_json()
    assert data == {
        'used': 0,
        'quota': 5 * 1024 ** 3,
        'available': 5 * 1024 ** 3,
        'prefix': alice.namespace_prefix,
    }


def test_folder_flow(alice_client):
    response = alice_client.post('/api/files/folders', json={'name': 'docs'})
    assert response.status_code == 201
    folder_id = response.get_json()['folder']['id']

    response = upload(alice_client, name='a.txt', data=b'a', folder_id=folder_id)
    assert response.status_code == 201
    file_id = response.get_json()['file']['id']
    assert response.get_json()['file']['path'] == 'docs/a.txt'

    response = alice_client.get(f'/api/files?folder_id={folder_id}')
    assert [f['id'] for f in response.get_json()['files']] == [file_id]

    response = alice_client.delete(f'/api/files/{folder_id}')
    assert response.status_code == 409
    assert response.get_json()['kind'] == 'non_empty_folder'

    alice_client.delete(f'/api/files/{file_id}')
    assert alice_client.delete(f'/api/files/{folder_id}').status_code == 200


def test_create_folder_requires_json(alice_client):
    response = alice_client.post('/api/files/folders', data='not json')
    assert response.status_code == 400


def test_rename_and_move(alice_client):
    folder_id = alice_client.post('/api/files/folders', json={'name': 'docs'}).get_json()['folder']['id']
    file_id = upload(alice_client, name='a.txt').get_json()['file']['id']

    response = alice_client.patch(f'/api/files/{file_id}', json={'operation': 'rename', 'name': 'b.txt'})
    assert response.status_code == 200
    assert response.get_json()['file']['name'] == 'b.txt'

    response = alice_client.patch(f'/api/files/{file_id}', json={'operation': 'move', 'target_folder_id': folder_id})
    assert response.status_code == 200
    assert response.get_json()['file']['path'] == 'docs/b.txt'

    response = alice_client.get(f'/api/files/{file_id}/download')
    assert response.data == b'hello world'

    response = alice_client.patch(f'/api/files/{folder_id}', json={'operation': 'move', 'target_folder_id': None})
    assert response.status_code == 400
    assert response.get_json()['kind'] == 'unsupported'

    response = alice_client.patch(f'/api/files/{file_id}', json={'operation': 'copy'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid operation'


def test_download_url_and_blob(alice_client):
    file_id = upload(alice_client).get_json()['file']['id']

    response = alice_client.get(f'/api/files/{file_id}/url')
    assert response.status_code == 200
    data = response.get_json()
    assert data['file_name'] == 'hello.txt'
    assert data['expires_in'] == 3600

    response = alice_client.get(data['download_url'])
    assert response.status_code == 200
    assert response.data == b'hello world'


def test_blob_with_bad_token(client):
    response = client.get('/api/files/blob/not-a-token')
    assert response.status_code == 404


def test_objects_listing(alice_client):
    folder_id = alice_client.post('/api/files/folders', json={'name': 'docs'}).get_json()['folder']['id']
    upload(alice_client, name='root.txt')
    upload(alice_client, name='a.txt', folder_id=folder_id)

    response = alice_client.get('/api/objects')
    assert response.status_code == 200
    data = response.get_json()
    assert data['folders'] == ['docs/']
    assert [item['key'] for item in data['items']] == ['root.txt']

    response = alice_client.get('/api/objects?prefix=docs')
    assert [item['key'] for item in response.get_json()['items']] == ['docs/a.txt']


def test_other_users_files_are_not_found(client, alice, bob, store, login):
    entry = registry.upload(alice, store, 'private.txt', b'secret')
    login('user_bob')

    assert client.get(f'/api/files/{entry.id}').status_code == 404
    assert client.get(f'/api/files/{entry.id}/download').status_code == 404
    assert client.delete(f'/api/files/{entry.id}').status_code == 404
    assert client.get('/api/files').get_json()['count'] == 0


def test_api_key_authenticates(client, alice):
    headers = key_headers(alice, ['read', 'write'])

    response = client.get('/api/users/me', headers=headers)
    assert response.status_code == 200
    data = response.get_json()
    assert data['id'] == alice.id
    assert data['auth_type'] == 'api_key'
    assert data['permissions'] == ['read', 'write']

    response = client.post(
        '/api/files/upload',
        data={'file': (io.BytesIO(b'x'), 'x.txt')},
        content_type='multipart/form-data',
        headers=headers,
    )
    assert response.status_code == 201


def test_bearer_api_key(client, alice):
    _, plaintext = credentials.create_key(alice.id, 'bearer')
    response = client.get('/api/files', headers={'Authorization': f'Bearer {plaintext}'})
    assert response.status_code == 200


def test_read_only_key_cannot_upload(client, alice):
    headers = key_headers(alice, ['read'])
    response = client.post(
        '/api/files/upload',
        data={'file': (io.BytesIO(b'x'), 'x.txt')},
        content_type='multipart/form-data',
        headers=headers,
    )
    assert response.status_code == 403
    assert response.get_json()['kind'] == 'forbidden'
    assert client.get('/api/files', headers=headers).status_code == 200


def test_invalid_key_falls_back_to_session(alice_client):
    response = alice_client.get('/api/users/me', headers={'X-API-Key': 'sk_' + '0' * 64})
    assert response.status_code == 200
    assert response.get_json()['auth_type'] == 'session'


def test_revoked_key_is_rejected(client, alice):
    api_key, plaintext = credentials.create_key(alice.id, 'soon revoked')
    credentials.revoke_key(api_key.id, alice.id)
    response = client.get('/api/files', headers={'X-API-Key': plaintext})
    assert response.status_code == 401


def test_key_management(alice_client):
    response = alice_client.post('/api/keys', json={'name': 'ci', 'permissions': ['read', 'delete']})
    assert response.status_code == 201
    data = response.get_json()
    plaintext = data['key']
    assert plaintext.startswith('sk_')
    assert data['api_key']['key'] == f'sk_****{plaintext[-4:]}'
    assert data['api_key']['permissions'] == ['read', 'delete']
    key_id = data['api_key']['id']

    response = alice_client.get('/api/keys')
    listed = response.get_json()['api_keys']
    assert [k['id'] for k in listed] == [key_id]
    assert 'key_hash' not in listed[0]
    assert plaintext not in json.dumps(listed)

    assert alice_client.post(f'/api/keys/{key_id}/revoke').status_code == 200
    assert alice_client.get('/api/keys').get_json()['api_keys'][0]['is_active'] is False

    assert alice_client.delete(f'/api/keys/{key_id}').status_code == 200
    assert alice_client.get('/api/keys').get_json()['api_keys'] == []


def test_key_creation_validation(alice_client):
    assert alice_client.post('/api/keys', json={}).status_code == 400
    assert alice_client.post('/api/keys', json={'name': 'x', 'permissions': ['admin']}).status_code == 400
    response = alice_client.post('/api/keys', json={'name': 'x', 'expires_at': 'tomorrow'})
    assert response.status_code == 400
    response = alice_client.post('/api/keys', json={'name': 'x', 'expires_at': '2001-01-01T00:00:00Z'})
    assert response.status_code == 400


def test_key_routes_refuse_api_keys(client, alice):
    headers = key_headers(alice, ['read', 'write', 'delete'])
    assert client.get('/api/keys', headers=headers).status_code == 401
    assert client.post('/api/keys', json={'name': 'x'}, headers=headers).status_code == 401


def test_cannot_revoke_another_users_key(client, alice, bob, login):
    api_key, _ = credentials.create_key(alice.id, 'alice key')
    login('user_bob')
    assert client.post(f'/api/keys/{api_key.id}/revoke').status_code == 404
    assert client.delete(f'/api/keys/{api_key.id}').status_code == 404


def post_webhook(client, event, secret='test-webhook-secret', signature=None):
    payload = json.dumps(event).encode('utf-8')
    headers = {'X-Webhook-Signature': signature or sign_webhook_payload(secret, payload)}
    return client.post('/api/webhooks/identity', data=payload, content_type='application/json', headers=headers)


def user_event(event_type='user.created', **data):
    data.setdefault('id', 'user_carol')
    data.setdefault('email_addresses', [{'email_address': 'carol@example.com'}])
    return {'type': event_type, 'data': data}


def test_webhook_creates_and_updates_user(client):
    response = post_webhook(client, user_event(first_name='Carol'))
    assert response.status_code == 200
    user = ledger.resolve('user_carol')
    assert user.email == 'carol@example.com'
    assert user.first_name == 'Carol'

    response = post_webhook(client, user_event('user.updated', first_name='Caroline'))
    assert response.status_code == 200
    assert ledger.resolve('user_carol').first_name == 'Caroline'


def test_webhook_ignores_other_events(client):
    response = post_webhook(client, {'type': 'session.created', 'data': {}})
    assert response.status_code == 200
    assert ledger.resolve('user_carol') is None


def test_webhook_rejects_bad_signature(client):
    response = post_webhook(client, user_event(), secret='wrong-secret')
    assert response.status_code == 400
    assert ledger.resolve('user_carol') is None

    response = client.post('/api/webhooks/identity', json=user_event())
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Missing webhook signature'


def test_webhook_rejects_event_without_email(client):
    response = post_webhook(client, user_event(email_addresses=[]))
    assert response.status_code == 400


def test_webhook_without_secret_configured(app, client):
    app.config['WEBHOOK_SECRET'] = None
    response = post_webhook(client, user_event())
    assert response.status_code == 500


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    data = response.get_json()
    assert data['status'] == 'healthy'
    assert data['services'] == {'database': 'healthy', 'storage': 'healthy'}
    assert set(data['metrics']) == {'uptime', 'request_count', 'status_counts'}


def test_health_degraded_when_storage_down(client, store, monkeypatch):
    monkeypatch.setattr(store, 'check', lambda: False)
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'degraded'


def test_requests_are_counted(app, client):
    metrics = app.extensions['cloudstore.metrics']
    metrics.reset()
    client.get('/')
    client.get('/api/files')
    snapshot = metrics.snapshot()
    assert snapshot['request_count'] == 2
    assert snapshot['status_counts'] == {'2xx': 1, '4xx': 1}


def test_key_creation_rejects_nested_permissions(alice_client):
    response = alice_client.post('/api/keys', json={'name': 'k', 'permissions': [['read']]})
    assert response.status_code == 400
    assert response.get_json()['kind'] == 'validation'
