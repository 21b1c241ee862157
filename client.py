import argparse
import json
import os
import sys
from io import BytesIO
from urllib.parse import urlencode

import certifi
import pycurl

from cloudstore.retry import RetryExhausted, RetryPolicy


class ApiError(Exception):
    def __init__(self, status, message):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class TransientError(Exception):
    """Network failure or 503 from the server; safe to retry."""


class CloudStoreClient:
    """Programmatic access to a cloud storage server with an API key."""

    def __init__(self, base_url, api_key, timeout=30, retry_policy=None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=4, retry_on=(TransientError,))

    def _send(self, method, path, json_body=None, form=None):
        """Perform one HTTP request. Returns ``(status, body_bytes)``."""
        # Create a buffer to store the response
        buffer = BytesIO()
        c = pycurl.Curl()
        headers = [f'X-API-Key: {self.api_key}', 'Accept: application/json']

        c.setopt(c.URL, self.base_url + path)
        c.setopt(c.WRITEDATA, buffer)

        # SSL/TLS configuration
        c.setopt(c.SSL_VERIFYPEER, 1)  # Verify the peer's certificate
        c.setopt(c.SSL_VERIFYHOST, 2)  # Verify the certificate's name against host
        c.setopt(c.CAINFO, certifi.where())  # Use certifi's certificate bundle
        c.setopt(c.CONNECTTIMEOUT, min(self.timeout, 10))
        c.setopt(c.TIMEOUT, self.timeout)

        if form is not None:
            c.setopt(c.HTTPPOST, form)
        elif json_body is not None:
            headers.append('Content-Type: application/json')
            c.setopt(c.POSTFIELDS, json.dumps(json_body))
        elif method == 'POST':
            c.setopt(c.POSTFIELDS, '')
        if method not in ('GET', 'POST'):
            c.setopt(c.CUSTOMREQUEST, method)
        c.setopt(c.HTTPHEADER, headers)

        try:
            c.perform()
            status = c.getinfo(c.RESPONSE_CODE)
        except pycurl.error as e:
            raise TransientError(str(e))
        finally:
            # Clean up
            c.close()

        return status, buffer.getvalue()

    def _attempt(self, method, path, json_body=None, form=None):
        status, body = self._send(method, path, json_body=json_body, form=form)
        if status == 503:
            raise TransientError("Service unavailable")
        if status >= 400:
            try:
                message = json.loads(body).get('error', '')
            except ValueError:
                message = body.decode('utf-8', errors='replace')
            raise ApiError(status, message)
        return body

    def _request(self, method, path, json_body=None, form=None):
        try:
            return self.retry_policy.call(self._attempt, method, path, json_body=json_body, form=form)
        except RetryExhausted as e:
            raise ApiError(503, f"Server unavailable after {e.attempts} attempts") from e

    def _json(self, method, path, json_body=None, form=None):
        return json.loads(self._request(method, path, json_body=json_body, form=form))

    def list_files(self, folder_id=None, recursive=False):
        params = {}
        if folder_id:
            params['folder_id'] = folder_id
        if recursive:
            params['recursive'] = 'true'
        query = f'?{urlencode(params)}' if params else ''
        return self._json('GET', f'/api/files{query}')['files']

    def storage_info(self):
        return self._json('GET', '/api/users/me/storage')

    def upload_file(self, local_path, folder_id=None, name=None):
        form = [('file', (pycurl.FORM_FILE, local_path))]
        if folder_id:
            form.append(('folder_id', folder_id))
        if name:
            form.append(('name', name))
        return self._json('POST', '/api/files/upload', form=form)['file']

    def download_file(self, file_id, dest_path):
        data = self._request('GET', f'/api/files/{file_id}/download')
        with open(dest_path, 'wb') as f:
            f.write(data)
        return len(data)

    def delete_file(self, file_id):
        self._json('DELETE', f'/api/files/{file_id}')


def main(argv=None):
    parser = argparse.ArgumentParser(description="Cloud storage API client")
    parser.add_argument('--url', default=os.environ.get('CLOUDSTORE_URL', 'https://localhost:6969'))
    parser.add_argument('--api-key', default=os.environ.get('CLOUDSTORE_API_KEY'))
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('ls')
    sub.add_parser('usage')
    upload = sub.add_parser('put')
    upload.add_argument('path')
    upload.add_argument('--folder-id')
    download = sub.add_parser('get')
    download.add_argument('file_id')
    download.add_argument('dest')
    remove = sub.add_parser('rm')
    remove.add_argument('file_id')
    args = parser.parse_args(argv)

    if not args.api_key:
        parser.error("an API key is required (--api-key or CLOUDSTORE_API_KEY)")

    client = CloudStoreClient(args.url, args.api_key)
    try:
        if args.command == 'ls':
            for entry in client.list_files():
                kind = 'd' if entry['is_folder'] else '-'
                print(f"{kind} {entry['size']:>12} {entry['id']} {entry['path']}")
        elif args.command == 'usage':
            info = client.storage_info()
            print(f"{info['used']} / {info['quota']} bytes used ({info['available']} available)")
        elif args.command == 'put':
            entry = client.upload_file(args.path, folder_id=args.folder_id)
            print(f"Uploaded {entry['path']} as {entry['id']}")
        elif args.command == 'get':
            size = client.download_file(args.file_id, args.dest)
            print(f"Wrote {size} bytes to {args.dest}")
        elif args.command == 'rm':
            client.delete_file(args.file_id)
            print(f"Deleted {args.file_id}")
    except ApiError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
