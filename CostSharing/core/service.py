"""Google Drive API integration for group snapshots.

Each group is stored as one JSON file, ``<app_folder>/<groups_folder>/<group_id>.json``, shared with the
group's members. The snapshot version and modification time are mirrored into the file's
``appProperties`` so they can be compared without downloading the content.

Drive errors are translated into :mod:`CostSharing.status.status` exceptions. Rate limits, server errors
and network timeouts are retried with exponential backoff before they surface.
"""

import io
import logging
import socket
import ssl
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from .auth import auth_manager, AuthManager, AuthExpiredError
from .models import RemoteMetadata, format_datetime, parse_datetime
from ..actions import signals
from ..status import status

# Drive API clients, one per thread: the underlying httplib2 transport is not thread-safe
_local = threading.local()
_clients: List[Any] = []
_clients_lock = threading.Lock()
_generation: int = 0

MAX_RETRIES: int = 3
BASE_DELAY: float = 1.0

APP_PROPERTY_KEY: str = 'app'
APP_PROPERTY_VALUE: str = 'CostSharing'
FOLDER_MIME_TYPE: str = 'application/vnd.google-apps.folder'
SNAPSHOT_MIME_TYPE: str = 'application/json'

TRANSIENT_STATUS_CODES = (408, 429, 500, 502, 503, 504)


def cached_service() -> Any:
    """Return the calling thread's cached Drive client, or None if it has none."""
    if getattr(_local, 'generation', None) != _generation:
        return None
    return getattr(_local, 'service', None)


def clear_service() -> None:
    """
    Clears the cached Drive API clients of every thread.
    """
    global _generation

    with _clients_lock:
        clients = list(_clients)
        _clients.clear()
        _generation += 1

    for client in clients:
        try:
            client.close()
        except Exception as ex:
            logging.debug(f'Failed closing cached Drive service client: {ex}')


def get_service(manager: Optional[AuthManager] = None) -> Any:
    """
    Builds (or returns cached) Google Drive service client.

    Returns:
        The Drive v3 API Resource. Each thread gets its own client, reused until
        :func:`clear_service` is called.

    Raises:
        status.AuthenticationException: If no valid credentials are available.
        status.ServiceUnavailableException: If the client cannot be built.
    """
    manager = manager or auth_manager
    try:
        creds: Any = manager.get_valid_credentials()
    except AuthExpiredError as ex:
        raise status.AuthenticationException(str(ex)) from ex

    service: Any = cached_service()
    if service is not None:
        return service
    try:
        service = build('drive', 'v3', credentials=creds, cache_discovery=False)
    except Exception as ex:
        raise status.ServiceUnavailableException from ex

    logging.debug(f'Google Drive service client created for thread "{threading.current_thread().name}".')
    with _clients_lock:
        _clients.append(service)
        _local.service = service
        _local.generation = _generation
    return service


def _http_status(ex: HttpError) -> Optional[int]:
    return ex.resp.status if ex.resp is not None else None


def is_transient(ex: Exception) -> bool:
    """Return True if ``ex`` is worth retrying."""
    if isinstance(ex, HttpError):
        return _http_status(ex) in TRANSIENT_STATUS_CODES
    return isinstance(ex, (socket.timeout, TimeoutError, ssl.SSLError, ConnectionError))


def translate_error(ex: Exception, context: str) -> status.RemoteStoreException:
    """Map a Drive client error onto the remote store exception taxonomy.

    Args:
        ex: The error raised by the Drive client.
        context: Short description of the failed operation, used in the message.

    Returns:
        status.RemoteStoreException: The exception to raise.
    """
    if isinstance(ex, HttpError):
        stat = _http_status(ex)
        if stat == 404:
            return status.RemoteNotFoundException(f'{context} (HTTP 404).')
        if stat in (401, 403):
            return status.RemoteForbiddenException(f'{context} (HTTP {stat}).')
        if stat in TRANSIENT_STATUS_CODES:
            return status.RemoteTransientException(f'{context} (HTTP {stat}).')
        return status.ServiceUnavailableException(f'{context}: {ex}')
    if isinstance(ex, (socket.timeout, TimeoutError)):
        return status.RemoteTransientException(f'Timeout error: {context}: {ex}')
    if isinstance(ex, ssl.SSLError):
        return status.RemoteTransientException(f'SSL error: {context}: {ex}')
    return status.RemoteTransientException(f'Connection error: {context}: {ex}')


class DriveSnapshotStore:
    """Remote store of group snapshots backed by Google Drive.

    Args:
        manager: Credential provider, defaults to the module level :data:`auth_manager`.
        service: Optional prebuilt Drive resource. Built lazily from ``manager`` otherwise.
        sleep: Function used to wait between retries.
    """

    def __init__(self, manager: Optional[AuthManager] = None, service: Any = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self._manager = manager or auth_manager
        self._service = service
        self._sleep = sleep
        self._folder_id: Optional[str] = None

    @property
    def service(self) -> Any:
        if self._service is not None:
            return self._service
        return get_service(self._manager)

    def _execute(self, request_factory: Callable[[], Any], context: str) -> Any:
        """Execute a Drive request, retrying transient failures.

        Args:
            request_factory: Returns a fresh request object for every attempt.
            context: Description of the operation for log and error messages.

        Raises:
            status.RemoteStoreException: On failure, after retries for transient errors.
        """
        attempt = 0
        while True:
            try:
                return request_factory().execute()
            except (HttpError, socket.timeout, TimeoutError, ssl.SSLError, ConnectionError) as ex:
                if is_transient(ex) and attempt < MAX_RETRIES:
                    delay = BASE_DELAY * (2 ** attempt)
                    attempt += 1
                    logging.warning(
                        f'{context} failed ({ex}); retrying in {delay}s (attempt {attempt}/{MAX_RETRIES}).'
                    )
                    self._sleep(delay)
                    continue
                raise translate_error(ex, context) from ex

    def _find_or_create_folder(self, name: str, parent_id: Optional[str]) -> str:
        query = f"mimeType='{FOLDER_MIME_TYPE}' and name='{name}' and trashed=false"
        if parent_id:
            query += f" and '{parent_id}' in parents"

        result: Dict[str, Any] = self._execute(
            lambda: self.service.files().list(q=query, spaces='drive', fields='files(id,name)'),
            f'Looking up folder "{name}"'
        )
        files = result.get('files', [])
        if files:
            return files[0]['id']

        body: Dict[str, Any] = {'name': name, 'mimeType': FOLDER_MIME_TYPE}
        if parent_id:
            body['parents'] = [parent_id]
        created: Dict[str, Any] = self._execute(
            lambda: self.service.files().create(body=body, fields='id'),
            f'Creating folder "{name}"'
        )
        logging.info(f'Created Drive folder "{name}" ({created["id"]}).')
        return created['id']

    def groups_folder_id(self) -> str:
        """Return the id of the folder holding group snapshots, creating it if needed."""
        if self._folder_id:
            return self._folder_id

        from ..settings import lib
        config = lib.settings.get_section('drive')
        app_folder = self._find_or_create_folder(config['app_folder'], None)
        self._folder_id = self._find_or_create_folder(config['groups_folder'], app_folder)
        return self._folder_id

    def upload(self, group_id: str, data: bytes, file_id: Optional[str] = None,
               version: int = 0, last_modified: Any = None) -> str:
        """Create or overwrite a group's snapshot file.

        Args:
            group_id: Group the snapshot belongs to.
            data: Serialized snapshot.
            file_id: Existing file to overwrite, a new file is created when None.
            version: Snapshot version, stored in the file's appProperties.
            last_modified: Snapshot modification time, stored in the file's appProperties.

        Returns:
            str: The Drive file id.
        """
        app_properties = {
            APP_PROPERTY_KEY: APP_PROPERTY_VALUE,
            'groupId': group_id,
            'version': str(version),
            'lastModified': format_datetime(parse_datetime(last_modified)) or '',
        }

        def media() -> MediaIoBaseUpload:
            return MediaIoBaseUpload(io.BytesIO(data), mimetype=SNAPSHOT_MIME_TYPE, resumable=False)

        if file_id:
            result = self._execute(
                lambda: self.service.files().update(
                    fileId=file_id, body={'appProperties': app_properties}, media_body=media(), fields='id'
                ),
                f'Uploading group "{group_id}"'
            )
        else:
            body = {
                'name': f'{group_id}.json',
                'parents': [self.groups_folder_id()],
                'mimeType': SNAPSHOT_MIME_TYPE,
                'appProperties': app_properties,
            }
            result = self._execute(
                lambda: self.service.files().create(body=body, media_body=media(), fields='id'),
                f'Creating snapshot of group "{group_id}"'
            )
        logging.debug(f'Uploaded group "{group_id}" version {version} to file {result["id"]}.')
        return result['id']

    def download(self, file_id: str) -> bytes:
        """Return the raw content of a snapshot file."""
        content = self._execute(
            lambda: self.service.files().get_media(fileId=file_id),
            f'Downloading file "{file_id}"'
        )
        if isinstance(content, str):
            content = content.encode('utf-8')
        return content

    def get_metadata(self, file_id: str) -> RemoteMetadata:
        """Return the version stamp of a snapshot file without downloading it.

        Raises:
            status.RemoteNotFoundException: If the file does not exist or was trashed.
        """
        result: Dict[str, Any] = self._execute(
            lambda: self.service.files().get(fileId=file_id, fields='id,modifiedTime,trashed,appProperties'),
            f'Reading metadata of file "{file_id}"'
        )
        if result.get('trashed'):
            raise status.RemoteNotFoundException(f'File "{file_id}" is in the trash.')

        props: Dict[str, str] = result.get('appProperties') or {}
        try:
            version = int(props.get('version') or 0)
        except ValueError:
            logging.warning(f'File "{file_id}" has an invalid version "{props.get("version")}".')
            version = 0
        last_modified = parse_datetime(props.get('lastModified') or result.get('modifiedTime'))
        return RemoteMetadata(version=version, last_modified=last_modified)

    def list_accessible(self, user_id: Optional[str] = None) -> List[Tuple[str, str]]:
        """List the snapshot files visible to the signed-in user.

        Args:
            user_id: Unused by Drive, which scopes the listing to the credentials' owner.

        Returns:
            List[Tuple[str, str]]: (file_id, group_id) pairs.
        """
        query = (
            f"mimeType='{SNAPSHOT_MIME_TYPE}' and trashed=false and "
            f"appProperties has {{ key='{APP_PROPERTY_KEY}' and value='{APP_PROPERTY_VALUE}' }}"
        )
        found: List[Tuple[str, str]] = []
        page_token: Optional[str] = None
        while True:
            result: Dict[str, Any] = self._execute(
                lambda: self.service.files().list(
                    q=query, spaces='drive', pageToken=page_token,
                    fields='nextPageToken, files(id,name,appProperties)'
                ),
                'Listing group snapshots'
            )
            for item in result.get('files', []):
                props = item.get('appProperties') or {}
                group_id = props.get('groupId') or item.get('name', '').removesuffix('.json')
                if group_id:
                    found.append((item['id'], group_id))
            page_token = result.get('nextPageToken')
            if not page_token:
                break
        logging.debug(f'Found {len(found)} accessible group snapshot(s).')
        return found

    def set_permissions(self, file_id: str, emails: List[str]) -> None:
        """Give every address in ``emails`` write access to a snapshot file."""
        for email in emails:
            if not email:
                continue
            self._execute(
                lambda: self.service.permissions().create(
                    fileId=file_id,
                    body={'type': 'user', 'role': 'writer', 'emailAddress': email},
                    sendNotificationEmail=False,
                    fields='id'
                ),
                f'Sharing file "{file_id}" with {email}'
            )
            logging.info(f'Shared file "{file_id}" with {email}.')

    def remove_permission(self, file_id: str, email: str) -> None:
        """Revoke ``email``'s access to a snapshot file. Unknown addresses are ignored."""
        result: Dict[str, Any] = self._execute(
            lambda: self.service.permissions().list(fileId=file_id, fields='permissions(id,emailAddress)'),
            f'Listing permissions of file "{file_id}"'
        )
        for permission in result.get('permissions', []):
            if (permission.get('emailAddress') or '').lower() != email.lower():
                continue
            self._execute(
                lambda: self.service.permissions().delete(fileId=file_id, permissionId=permission['id']),
                f'Revoking access of {email} to file "{file_id}"'
            )
            logging.info(f'Revoked access of {email} to file "{file_id}".')

    def fetch_identity(self) -> Tuple[str, str]:
        """Return the (permission id, email address) of the signed-in Drive user."""
        result: Dict[str, Any] = self._execute(
            lambda: self.service.about().get(fields='user(emailAddress,permissionId)'),
            'Reading user identity'
        )
        user = result.get('user') or {}
        return user.get('permissionId', ''), user.get('emailAddress', '')


# Reset cached Drive API client when credentials/config change
@QtCore.Slot(str)
def _reset_cached_service(section: str) -> None:
    """Clear the cached Drive client when client_secret changes."""
    if section == 'client_secret':
        logging.debug('Clearing cached Drive service client due to client_secret change')
        clear_service()


signals.configSectionChanged.connect(_reset_cached_service)
