from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List
import logging
import os
import shutil
import time

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from itsdangerous import BadSignature, URLSafeTimedSerializer

from .errors import NotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ObjectInfo:
    key: str
    size: int
    last_modified: float = None


@dataclass
class ObjectListing:
    common_prefixes: List[str] = field(default_factory=list)
    items: List[ObjectInfo] = field(default_factory=list)


class ObjectStore(ABC):
    """Blob storage addressed by opaque string keys.

    Keys are always built by :mod:`cloudstore.namespacing`; backends never
    invent or rewrite them.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object's bytes. Raises NotFound for a missing key."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""

    @abstractmethod
    def copy(self, source_key: str, dest_key: str) -> None:
        pass

    @abstractmethod
    def list(self, prefix: str, delimiter: str = '/') -> ObjectListing:
        pass

    @abstractmethod
    def presigned_url(self, key: str, expires_in: int) -> str:
        """Generate a download URL that stops working after ``expires_in`` seconds."""

    @abstractmethod
    def check(self) -> bool:
        """Cheap reachability probe for health checks."""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store, one file per key under ``root``."""

    def __init__(self, root, secret_key, public_url='/api/files/blob'):
        self.root = Path(root).resolve()
        self.public_url = public_url.rstrip('/')
        self.serializer = URLSafeTimedSerializer(secret_key, salt='cloudstore-blob')
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key):
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f'Key escapes storage root: {key!r}')
        return path

    def put(self, key, data, content_type):
        path = self._path(key)
        try:
            os.makedirs(path.parent, exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Error writing object {key}: {e}")
            raise UpstreamUnavailable('Object storage write failed') from e

    def get(self, key):
        path = self._path(key)
        if not path.is_file():
            raise NotFound('Object not found')
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.error(f"Error reading object {key}: {e}")
            raise UpstreamUnavailable('Object storage read failed') from e

    def _prune(self, directory):
        """Remove ``directory`` and its parents while they are empty, stopping at the root."""
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                # Not empty, or already gone
                return
            directory = directory.parent

    def delete(self, key):
        path = self._path(key)
        try:
            if path.is_file():
                os.remove(path)
        except OSError as e:
            logger.error(f"Error deleting object {key}: {e}")
            raise UpstreamUnavailable('Object storage delete failed') from e
        self._prune(path.parent)

    def copy(self, source_key, dest_key):
        source = self._path(source_key)
        dest = self._path(dest_key)
        if not source.is_file():
            raise NotFound('Object not found')
        try:
            os.makedirs(dest.parent, exist_ok=True)
            shutil.copyfile(source, dest)
        except OSError as e:
            logger.error(f"Error copying object {source_key} to {dest_key}: {e}")
            raise UpstreamUnavailable('Object storage copy failed') from e

    def list(self, prefix, delimiter='/'):
        listing = ObjectListing()
        seen_prefixes = set()
        # Only the directory holding the prefix can contain matching keys
        start = self._path(prefix.rpartition('/')[0])
        if not start.is_dir():
            return listing
        for dirpath, _dirnames, filenames in os.walk(start):
            for filename in filenames:
                full_path = Path(dirpath) / filename
                key = full_path.relative_to(self.root).as_posix()
                if not key.startswith(prefix):
                    continue
                rest = key[len(prefix):]
                if delimiter and delimiter in rest:
                    common = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if common not in seen_prefixes:
                        seen_prefixes.add(common)
                        listing.common_prefixes.append(common)
                    continue
                stat = full_path.stat()
                listing.items.append(ObjectInfo(key=key, size=stat.st_size, last_modified=stat.st_mtime))
        listing.common_prefixes.sort()
        listing.items.sort(key=lambda item: item.key)
        return listing

    def presigned_url(self, key, expires_in):
        token = self.serializer.dumps({'key': key, 'expires_in': expires_in})
        return f'{self.public_url}/{token}'

    def resolve_token(self, token):
        """Return the key a token from :meth:`presigned_url` grants, or raise NotFound."""
        try:
            payload, issued_at = self.serializer.loads(token, return_timestamp=True)
        except BadSignature:
            raise NotFound('Invalid or expired link')
        if time.time() - issued_at.timestamp() > payload['expires_in']:
            raise NotFound('Invalid or expired link')
        return payload['key']

    def check(self):
        return self.root.is_dir() and os.access(self.root, os.W_OK)


class S3ObjectStore(ObjectStore):
    """Amazon S3 (or S3-compatible) bucket.

    The client is built with bounded connect/read timeouts and a single
    attempt per call; callers decide whether to retry.
    """

    def __init__(self, bucket, region='us-east-1', endpoint_url=None, timeout=10, client=None):
        self.bucket = bucket
        self.s3 = client or boto3.client(
            's3',
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={'total_max_attempts': 1},
            ),
        )

    def _call(self, action, key, fn, **kwargs):
        try:
            return fn(**kwargs)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code in ('NoSuchKey', '404', 'NotFound'):
                raise NotFound('Object not found') from e
            logger.error(f"S3 {action} failed for {key}: {e}")
            raise UpstreamUnavailable(f'Object storage {action} failed') from e
        except BotoCoreError as e:
            logger.error(f"S3 {action} failed for {key}: {e}")
            raise UpstreamUnavailable(f'Object storage {action} failed') from e

    def put(self, key, data, content_type):
        self._call('write', key, self.s3.put_object,
                   Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    def get(self, key):
        response = self._call('read', key, self.s3.get_object, Bucket=self.bucket, Key=key)
        return response['Body'].read()

    def delete(self, key):
        self._call('delete', key, self.s3.delete_object, Bucket=self.bucket, Key=key)

    def copy(self, source_key, dest_key):
        self._call('copy', source_key, self.s3.copy_object,
                   Bucket=self.bucket, Key=dest_key,
                   CopySource={'Bucket': self.bucket, 'Key': source_key})

    def list(self, prefix, delimiter='/'):
        listing = ObjectListing()
        kwargs = {'Bucket': self.bucket, 'Prefix': prefix}
        if delimiter:
            kwargs['Delimiter'] = delimiter
        while True:
            response = self._call('list', prefix, self.s3.list_objects_v2, **kwargs)
            listing.common_prefixes.extend(p['Prefix'] for p in response.get('CommonPrefixes', []))
            for obj in response.get('Contents', []):
                modified = obj.get('LastModified')
                listing.items.append(ObjectInfo(
                    key=obj['Key'],
                    size=obj['Size'],
                    last_modified=modified.timestamp() if modified else None,
                ))
            if not response.get('IsTruncated'):
                break
            kwargs['ContinuationToken'] = response['NextContinuationToken']
        return listing

    def presigned_url(self, key, expires_in):
        return self._call('presign', key, self.s3.generate_presigned_url,
                          ClientMethod='get_object',
                          Params={'Bucket': self.bucket, 'Key': key},
                          ExpiresIn=expires_in)

    def check(self):
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3 health check failed: {e}")
            return False


def create_object_store(config):
    backend = config['STORAGE_BACKEND']
    if backend == 'local':
        return LocalObjectStore(config['UPLOAD_FOLDER'], config['SECRET_KEY'])
    if backend == 's3':
        if not config.get('S3_BUCKET'):
            raise ValueError("S3_BUCKET must be set when STORAGE_BACKEND is 's3'.")
        return S3ObjectStore(
            config['S3_BUCKET'],
            region=config['AWS_REGION'],
            endpoint_url=config.get('S3_ENDPOINT_URL'),
            timeout=config['STORAGE_TIMEOUT'],
        )
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
