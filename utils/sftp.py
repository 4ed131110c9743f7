"""
SFTP Client Utilities

Provides SFTP sessions with SSH key authentication plus the remote filesystem
helpers used by the SFTP multipart assembler (recursive mkdir, byte writes,
chunked reads).
"""

import logging
from contextlib import contextmanager
from pathlib import PurePosixPath
from typing import Iterator, Optional

import paramiko
from paramiko import SFTPClient, SSHClient

from utils.config import settings

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 1024 * 1024


def _load_private_key() -> paramiko.PKey:
    key_path = settings.SFTP_KEY_PATH
    try:
        return paramiko.RSAKey.from_private_key_file(
            key_path,
            password=settings.SFTP_KEY_PASSPHRASE or None,
        )
    except FileNotFoundError:
        raise FileNotFoundError(f"SSH key file not found: {key_path}")
    except paramiko.PasswordRequiredException:
        raise ValueError("SSH key requires passphrase but SFTP_KEY_PASSPHRASE not set")
    except paramiko.SSHException as e:
        raise paramiko.SSHException(f"Failed to load SSH key: {e}") from e


@contextmanager
def sftp_session() -> Iterator[SFTPClient]:
    """
    Open an SFTP session using SSH key authentication and close it on exit.

    Disables host key checking for container environments.

    Yields:
        Connected SFTP client

    Raises:
        ValueError: If SFTP configuration is incomplete
        IOError: If the connection cannot be established
    """
    if not settings.SFTP_HOST:
        raise ValueError("SFTP_HOST is not configured")
    if not settings.SFTP_USERNAME:
        raise ValueError("SFTP_USERNAME is not configured")

    private_key = _load_private_key()

    ssh_client = SSHClient()
    ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        ssh_client.connect(
            hostname=settings.SFTP_HOST,
            port=settings.SFTP_PORT,
            username=settings.SFTP_USERNAME,
            pkey=private_key,
            timeout=settings.SFTP_TIMEOUT,
            auth_timeout=settings.SFTP_TIMEOUT,
        )
        sftp_client = ssh_client.open_sftp()
    except Exception as e:
        ssh_client.close()
        raise IOError(f"Failed to establish SFTP connection: {e}") from e

    try:
        yield sftp_client
    finally:
        sftp_client.close()
        ssh_client.close()


def ensure_remote_dir(sftp_client: SFTPClient, remote_dir: str) -> None:
    """
    Ensure remote directory exists, creating it recursively if needed.

    Args:
        sftp_client: Active SFTP client connection
        remote_dir: Remote directory path to create

    Raises:
        IOError: If directory creation fails
    """
    if not remote_dir or remote_dir == "/":
        return

    remote_dir = remote_dir.rstrip("/")

    try:
        sftp_client.stat(remote_dir)
        return
    except FileNotFoundError:
        pass

    parent_dir = str(PurePosixPath(remote_dir).parent)
    if parent_dir not in ("/", remote_dir):
        ensure_remote_dir(sftp_client, parent_dir)

    try:
        sftp_client.mkdir(remote_dir)
        logger.debug("Created remote directory: %s", remote_dir)
    except IOError as e:
        # Another process may have created it concurrently
        try:
            sftp_client.stat(remote_dir)
        except FileNotFoundError:
            raise IOError(f"Failed to create remote directory {remote_dir}: {e}") from e


def write_bytes(sftp_client: SFTPClient, remote_path: str, data: bytes) -> None:
    """Write ``data`` to ``remote_path`` and verify the remote size."""
    with sftp_client.open(remote_path, "wb") as f:
        f.write(data)

    written = sftp_client.stat(remote_path).st_size
    if written != len(data):
        raise IOError(
            f"Upload verification failed: size mismatch (local={len(data)}, remote={written})"
        )


def remote_size(sftp_client: SFTPClient, remote_path: str) -> Optional[int]:
    """Return the size of ``remote_path``, or None if it does not exist."""
    try:
        return sftp_client.stat(remote_path).st_size
    except FileNotFoundError:
        return None


def iter_chunks(sftp_client: SFTPClient, remote_path: str) -> Iterator[bytes]:
    with sftp_client.open(remote_path, "rb") as f:
        while True:
            chunk = f.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            yield chunk


def remove_tree(sftp_client: SFTPClient, remote_dir: str) -> None:
    """Remove a flat staging directory and its files."""
    for name in sftp_client.listdir(remote_dir):
        sftp_client.remove(f"{remote_dir}/{name}")
    sftp_client.rmdir(remote_dir)
