"""
Backblaze B2 storage client.

Talks to the B2 native API (v2) over requests:
- account authorization and bucket resolution (cached per client)
- small-file uploads streamed from disk
- multipart ("large file") uploads with per-part SHA-1
- paginated listing by prefix
- buffered and streamed-to-disk downloads
- version deletion

Every upload attempt goes through a retry loop that understands the B2
error classes (expired upload URL, rate limiting, temporary 5xx).
"""

import os
import json
import time
import hashlib
import logging
import tempfile
import threading
from typing import Optional, Dict, Any, List, Tuple, Callable
from urllib.parse import quote

import requests


logger = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://api.backblazeb2.com/b2api/v2/b2_authorize_account'
API_VERSION_PATH = '/b2api/v2/'
DEFAULT_CONTENT_TYPE = 'b2/x-auto'
DEFAULT_TIMEOUT = 300
DEFAULT_MAX_RETRIES = 3
LIST_PAGE_SIZE = 10000
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
HASH_CHUNK_SIZE = 1024 * 1024

# Fallbacks when the account does not report part sizes
FALLBACK_RECOMMENDED_PART_SIZE = 100 * 1024 * 1024
FALLBACK_MINIMUM_PART_SIZE = 5 * 1024 * 1024

EXPIRED_TOKEN_CODES = ('expired_auth_token', 'bad_auth_token')


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UnauthorizedError(StorageError):
    """Credentials were rejected. Not retried."""

    def __init__(self, message: str):
        super().__init__(f"Unauthorized: {message}")
        self.message = message


class ExpiredUploadURLError(StorageError):
    """The upload URL or auth token expired. Retried with a fresh target."""

    def __init__(self, message: str):
        super().__init__(f"Expired Upload URL: {message}")
        self.message = message


class RateLimitedError(StorageError):
    """HTTP 429."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        if retry_after is not None:
            text = f"Rate Limited (retry after {retry_after}s): {message}"
        else:
            text = f"Rate Limited: {message}"
        super().__init__(text)
        self.message = message
        self.retry_after = retry_after


class TemporaryError(StorageError):
    """HTTP 5xx."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Temporary {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ClientError(StorageError):
    """HTTP 4xx other than 401 and 429. Not retried."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Client {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class InvalidResponseError(StorageError):
    """The backend reply could not be understood."""

    def __init__(self, message: str):
        super().__init__(f"Invalid Response: {message}")
        self.message = message


class UnderlyingError(StorageError):
    """Transport-level failure (DNS, connection reset, timeout)."""

    def __init__(self, message: str):
        super().__init__(f"Underlying: {message}")
        self.message = message


def _parse_error_body(body: str) -> Tuple[Optional[str], str]:
    """Return (B2 error code, human message) from a response body."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None, body
    if not isinstance(data, dict):
        return None, body
    return data.get('code'), data.get('message') or body


def classify_http_error(status_code: int, body: str, retry_after: Optional[int] = None) -> StorageError:
    """
    Map a failed HTTP response onto the storage error taxonomy.

    A 401 counts as an expired upload URL when the B2 error code says the
    token expired or was rejected, or when the body mentions "expired".
    A plain-text 401 that mentions a token is treated the same way. Any
    other 401 is a hard credentials failure.

    Args:
        status_code: HTTP status code
        body: Response body text
        retry_after: Parsed Retry-After header, if any

    Returns:
        StorageError subclass instance (not raised)
    """
    body = body or ''
    code, message = _parse_error_body(body)
    lowered = body.lower()

    if status_code == 401:
        if code in EXPIRED_TOKEN_CODES or 'expired' in lowered:
            return ExpiredUploadURLError(message)
        if code is None and 'token' in lowered:
            return ExpiredUploadURLError(message)
        return UnauthorizedError(message)

    if status_code == 429:
        return RateLimitedError(message, retry_after)

    if 500 <= status_code < 600:
        return TemporaryError(status_code, message)

    if 400 <= status_code < 500:
        return ClientError(status_code, message)

    return InvalidResponseError(f"Unexpected HTTP {status_code}: {message}")


def _retry_after(response) -> Optional[int]:
    value = response.headers.get('Retry-After') if response.headers else None
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def sha1_of_file(path: str) -> str:
    """Hex SHA-1 of a file, read in 1 MiB chunks."""
    digest = hashlib.sha1()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def encode_file_name(file_name: str) -> str:
    """Percent-encode a B2 file name for headers and download URLs."""
    return quote(file_name, safe='/')


class B2Storage:
    """
    Client for one B2 bucket.

    Authorization data and the bucket id are fetched lazily and cached for
    the lifetime of the client. They are only replaced when an API call is
    rejected with an expired auth token.
    """

    def __init__(self, key_id: str, application_key: str, bucket_name: str,
                 bucket_id: Optional[str] = None, max_retries: int = DEFAULT_MAX_RETRIES,
                 timeout: int = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        """
        Initialize B2 storage client.

        Args:
            key_id: Application key id
            application_key: Application key secret
            bucket_name: Bucket to operate on
            bucket_id: Bucket id (looked up by name when omitted)
            max_retries: Retries after the first attempt for retryable errors
            timeout: Per-request network timeout in seconds
            session: Optional requests session (for connection reuse or tests)
        """
        self.key_id = key_id
        self.application_key = application_key
        self.bucket_name = bucket_name
        self.bucket_id = bucket_id
        self.max_retries = max(0, max_retries)
        self.timeout = timeout
        self.session = session or requests.Session()

        self._lock = threading.Lock()
        self.account_id = None
        self.api_url = None
        self.download_url = None
        self.auth_token = None
        self._recommended_part_size = None
        self._absolute_minimum_part_size = None

    # -- HTTP plumbing -----------------------------------------------------

    def _request(self, method: str, url: str, **kwargs):
        kwargs.setdefault('timeout', self.timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise UnderlyingError(str(e)) from e

        if not 200 <= response.status_code < 300:
            error = classify_http_error(response.status_code, response.text, _retry_after(response))
            response.close()
            raise error
        return response

    @staticmethod
    def _json(response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Malformed JSON: {e}")
        if not isinstance(data, dict):
            raise InvalidResponseError("Expected a JSON object")
        return data

    def _with_reauth(self, call: Callable[[], Any]):
        """Run call(); on an expired auth token, re-authorize once and repeat."""
        self.authorize()
        try:
            return call()
        except ExpiredUploadURLError:
            logger.info("Authorization token expired, re-authorizing")
            self.reset_authorization()
            self.authorize()
            return call()

    def _api(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        def call():
            response = self._request(
                'POST',
                f"{self.api_url}{API_VERSION_PATH}{endpoint}",
                json=payload,
                headers={'Authorization': self.auth_token},
            )
            return self._json(response)

        return self._with_reauth(call)

    def _with_retries(self, description: str, operation: Callable[[], Any]):
        """
        Run one logical upload operation with the B2 retry policy.

        The operation must fetch its own upload target so an expired URL is
        replaced on the next attempt.

        Raises:
            StorageError: The last classified error once retries run out,
                or any non-retryable error immediately
        """
        attempts = self.max_retries + 1
        last_error = None

        for attempt in range(attempts):
            try:
                return operation()
            except ExpiredUploadURLError as e:
                last_error = e
                logger.warning(f"{description}: upload URL expired, retrying ({attempt + 1}/{attempts})")
                continue
            except RateLimitedError as e:
                last_error = e
                delay = e.retry_after if e.retry_after is not None else 2 ** attempt
            except TemporaryError as e:
                last_error = e
                delay = 2 ** attempt

            if attempt + 1 < attempts:
                logger.warning(f"{description}: {last_error}; retrying in {delay}s ({attempt + 1}/{attempts})")
                time.sleep(delay)

        raise last_error

    # -- Authorization -----------------------------------------------------

    def authorize(self):
        """
        Authorize the account. Idempotent; cached until reset.

        Raises:
            StorageError: If authorization fails
        """
        with self._lock:
            if self.auth_token:
                return

            response = self._request('GET', AUTHORIZE_URL, auth=(self.key_id, self.application_key))
            data = self._json(response)

            try:
                self.account_id = data['accountId']
                self.api_url = data['apiUrl'].rstrip('/')
                self.download_url = data['downloadUrl'].rstrip('/')
                self.auth_token = data['authorizationToken']
            except KeyError as e:
                raise InvalidResponseError(f"Authorization response missing {e}")

            self._recommended_part_size = data.get('recommendedPartSize')
            self._absolute_minimum_part_size = data.get('absoluteMinimumPartSize')
            logger.debug(f"Authorized B2 account {self.account_id}")

    def reset_authorization(self):
        with self._lock:
            self.auth_token = None

    def recommended_part_size(self) -> int:
        self.authorize()
        return int(self._recommended_part_size or FALLBACK_RECOMMENDED_PART_SIZE)

    def absolute_minimum_part_size(self) -> int:
        self.authorize()
        return int(self._absolute_minimum_part_size or FALLBACK_MINIMUM_PART_SIZE)

    def ensure_bucket_id(self) -> str:
        """
        Resolve the bucket id, looking it up by name once if not configured.

        Raises:
            InvalidResponseError: If the bucket does not exist
        """
        if self.bucket_id:
            return self.bucket_id

        self.authorize()
        data = self._api('b2_list_buckets', {
            'accountId': self.account_id,
            'bucketName': self.bucket_name,
        })

        for bucket in data.get('buckets', []):
            if bucket.get('bucketName') == self.bucket_name:
                self.bucket_id = bucket['bucketId']
                logger.debug(f"Resolved bucket {self.bucket_name} -> {self.bucket_id}")
                return self.bucket_id

        raise InvalidResponseError(f"Bucket not found: {self.bucket_name}")

    # -- Uploads -----------------------------------------------------------

    def get_upload_url(self) -> Dict[str, Any]:
        return self._api('b2_get_upload_url', {'bucketId': self.ensure_bucket_id()})

    def upload_small_file(self, local_path: str, file_name: str,
                          content_type: str = DEFAULT_CONTENT_TYPE,
                          sha1: Optional[str] = None) -> Dict[str, Any]:
        """
        Upload a file in a single request, streaming the body from disk.

        Args:
            local_path: File to upload
            file_name: Remote file name
            content_type: MIME type (default lets B2 detect it)
            sha1: Precomputed hex SHA-1 (computed here when omitted)

        Returns:
            B2 file info dict

        Raises:
            StorageError: If upload fails after retries
        """
        if sha1 is None:
            sha1 = sha1_of_file(local_path)
        size = os.path.getsize(local_path)

        def attempt():
            target = self.get_upload_url()
            with open(local_path, 'rb') as body:
                response = self._request(
                    'POST',
                    target['uploadUrl'],
                    data=body,
                    headers={
                        'Authorization': target['authorizationToken'],
                        'X-Bz-File-Name': encode_file_name(file_name),
                        'Content-Type': content_type,
                        'Content-Length': str(size),
                        'X-Bz-Content-Sha1': sha1,
                    },
                )
            return self._json(response)

        return self._with_retries(f"Upload {file_name}", attempt)

    def upload_bytes(self, data: bytes, file_name: str,
                     content_type: str = DEFAULT_CONTENT_TYPE) -> Dict[str, Any]:
        """Upload an in-memory payload (manifests, markers)."""
        sha1 = hashlib.sha1(data).hexdigest()

        def attempt():
            target = self.get_upload_url()
            response = self._request(
                'POST',
                target['uploadUrl'],
                data=data,
                headers={
                    'Authorization': target['authorizationToken'],
                    'X-Bz-File-Name': encode_file_name(file_name),
                    'Content-Type': content_type,
                    'Content-Length': str(len(data)),
                    'X-Bz-Content-Sha1': sha1,
                },
            )
            return self._json(response)

        return self._with_retries(f"Upload {file_name}", attempt)

    def start_large_file(self, file_name: str, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        data = self._api('b2_start_large_file', {
            'bucketId': self.ensure_bucket_id(),
            'fileName': file_name,
            'contentType': content_type,
        })
        try:
            return data['fileId']
        except KeyError:
            raise InvalidResponseError("b2_start_large_file response missing fileId")

    def get_upload_part_url(self, file_id: str) -> Dict[str, Any]:
        return self._api('b2_get_upload_part_url', {'fileId': file_id})

    def upload_part(self, file_id: str, part_number: int, data: bytes,
                    sha1: Optional[str] = None) -> str:
        """
        Upload one part of a large file with its own retry loop.

        Returns:
            Hex SHA-1 of the part
        """
        if sha1 is None:
            sha1 = hashlib.sha1(data).hexdigest()

        def attempt():
            target = self.get_upload_part_url(file_id)
            self._request(
                'POST',
                target['uploadUrl'],
                data=data,
                headers={
                    'Authorization': target['authorizationToken'],
                    'X-Bz-Part-Number': str(part_number),
                    'Content-Length': str(len(data)),
                    'X-Bz-Content-Sha1': sha1,
                },
            )
            return sha1

        return self._with_retries(f"Upload part {part_number}", attempt)

    def finish_large_file(self, file_id: str, part_sha1s: List[str]) -> Dict[str, Any]:
        return self._api('b2_finish_large_file', {
            'fileId': file_id,
            'partSha1Array': part_sha1s,
        })

    def cancel_large_file(self, file_id: str):
        self._api('b2_cancel_large_file', {'fileId': file_id})

    def upload_large_file(self, local_path: str, file_name: str,
                          content_type: str = DEFAULT_CONTENT_TYPE,
                          part_size: Optional[int] = None,
                          concurrency: int = 1) -> Dict[str, Any]:
        """
        Upload a file as a B2 large file.

        Parts are read as exact byte ranges and uploaded in order.
        `concurrency` is accepted for configuration compatibility; parts are
        currently sent one at a time.

        Args:
            local_path: File to upload
            file_name: Remote file name
            content_type: MIME type
            part_size: Part size in bytes (default: account recommendation)
            concurrency: Requested parallel part uploads (hint only)

        Returns:
            B2 file info dict

        Raises:
            StorageError: If any part fails after retries
        """
        minimum = self.absolute_minimum_part_size()
        part_size = max(part_size or self.recommended_part_size(), minimum)
        file_size = os.path.getsize(local_path)
        total_parts = max(1, -(-file_size // part_size))

        if concurrency > 1:
            logger.debug(f"upload_concurrency={concurrency} requested; uploading parts sequentially")

        file_id = self.start_large_file(file_name, content_type)
        logger.info(f"Large upload {file_name}: {total_parts} parts of {part_size} bytes")

        part_sha1s = []
        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(part_size)
                    if not data:
                        break
                    part_sha1s.append(self.upload_part(file_id, part_number, data))
                    logger.debug(f"Uploaded part {part_number}/{total_parts} of {file_name}")
                    part_number += 1

            return self.finish_large_file(file_id, part_sha1s)

        except Exception:
            # Cancel the unfinished large file so its parts do not linger
            try:
                self.cancel_large_file(file_id)
            except StorageError as cancel_error:
                logger.warning(f"Failed to cancel large file {file_id}: {cancel_error}")
            raise

    # -- Listing and deletion ----------------------------------------------

    def list_files_page(self, prefix: str = '', start_file_name: Optional[str] = None,
                        max_file_count: int = LIST_PAGE_SIZE) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        payload = {
            'bucketId': self.ensure_bucket_id(),
            'maxFileCount': max_file_count,
        }
        if prefix:
            payload['prefix'] = prefix
        if start_file_name:
            payload['startFileName'] = start_file_name

        data = self._api('b2_list_file_names', payload)
        return data.get('files', []), data.get('nextFileName')

    def list_files(self, prefix: str = '', max_file_count: int = LIST_PAGE_SIZE) -> List[Dict[str, Any]]:
        """
        List all files under a prefix, following pagination.

        Returns:
            List of B2 file dicts (fileName, fileId, contentLength, uploadTimestamp, ...)
        """
        files = []
        start_file_name = None

        while True:
            page, start_file_name = self.list_files_page(prefix, start_file_name, max_file_count)
            files.extend(page)
            if not start_file_name:
                break

        return files

    def list_file_versions(self, prefix: str = '', max_file_count: int = LIST_PAGE_SIZE) -> List[Dict[str, Any]]:
        """
        List every stored version under a prefix, following pagination.

        Manifests are re-uploaded on each checkpoint, so one name can have
        several versions; deleting a name completely needs all of them.
        """
        files = []
        start_file_name = None
        start_file_id = None

        while True:
            payload = {
                'bucketId': self.ensure_bucket_id(),
                'maxFileCount': max_file_count,
            }
            if prefix:
                payload['prefix'] = prefix
            if start_file_name:
                payload['startFileName'] = start_file_name
            if start_file_id:
                payload['startFileId'] = start_file_id

            data = self._api('b2_list_file_versions', payload)
            files.extend(data.get('files', []))
            start_file_name = data.get('nextFileName')
            start_file_id = data.get('nextFileId')
            if not start_file_name:
                break

        return files

    def delete_file_version(self, file_name: str, file_id: str):
        self._api('b2_delete_file_version', {'fileName': file_name, 'fileId': file_id})

    # -- Downloads ---------------------------------------------------------

    def _download_response(self, file_name: str, stream: bool = False):
        def call():
            return self._request(
                'GET',
                f"{self.download_url}/file/{self.bucket_name}/{encode_file_name(file_name)}",
                headers={'Authorization': self.auth_token},
                stream=stream,
            )

        return self._with_reauth(call)

    def download_file(self, file_name: str) -> bytes:
        """Download a whole object into memory (manifests and small metadata)."""
        response = self._download_response(file_name)
        return response.content

    def download_file_streaming(self, file_name: str, destination: str) -> int:
        """
        Stream an object to disk.

        Data is written to a temporary file beside the destination and moved
        into place only after the download completes.

        Returns:
            Number of bytes written

        Raises:
            StorageError: If the download fails
            OSError: If the destination cannot be written
        """
        dest_dir = os.path.dirname(os.path.abspath(destination))
        os.makedirs(dest_dir, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(prefix='.cloudsnap-', suffix='.part', dir=dest_dir)
        completed = False
        written = 0
        try:
            with os.fdopen(fd, 'wb') as out:
                response = self._download_response(file_name, stream=True)
                try:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            out.write(chunk)
                            written += len(chunk)
                except requests.RequestException as e:
                    raise UnderlyingError(str(e)) from e
                finally:
                    response.close()

            os.replace(temp_path, destination)
            completed = True
            return written
        finally:
            if not completed and os.path.exists(temp_path):
                os.remove(temp_path)

    # -- Diagnostics -------------------------------------------------------

    def test_connection(self) -> bool:
        """
        Check credentials, bucket access and listing.

        Raises:
            StorageError: If any step fails
        """
        self.authorize()
        self.ensure_bucket_id()
        self.list_files_page(max_file_count=1)
        return True
