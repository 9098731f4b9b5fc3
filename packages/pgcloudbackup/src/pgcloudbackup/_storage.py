from __future__ import annotations

import abc as _abc
import logging as _logging
import pathlib as _pathlib
import typing as _typing

from . import _errors, _util


__all__ = [
    "ObjectStorage",
    "S3Storage",
]


_LOGGER = _logging.getLogger(__name__)

_MULTIPART_THRESHOLD = 50 * 1024 * 1024


class ObjectStorage(_abc.ABC):
    """Remote object store receiving finished artifacts."""

    @_abc.abstractmethod
    def upload(self, local_path: str | _pathlib.Path, object_name: str) -> None:
        """Upload the file *local_path* as *object_name*.

        Raises :obj:`TransferError` on any failure.
        """
        raise NotImplementedError


class S3Storage(ObjectStorage):
    """S3 (or S3 compatible) bucket accessed through boto3.

    Without explicit credentials boto3's default credential chain is
    used.
    """

    _bucket: str
    _client: _typing.Any

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "",
        endpoint_url: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        client: _typing.Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("S3Storage requires a bucket name")
        self._bucket = bucket
        self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[upload]")
        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                region_name=region or None,
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
            )
        self._client = client

    @property
    def bucket(self) -> str:
        return self._bucket

    def __repr__(self) -> str:
        return f"{self.__class__.__qualname__}(bucket={self._bucket!r})"

    def upload(self, local_path: str | _pathlib.Path, object_name: str) -> None:
        import boto3.exceptions
        import botocore.exceptions
        import humanfriendly as _humanfriendly
        from boto3.s3.transfer import TransferConfig

        local_path = _pathlib.Path(local_path)
        try:
            size = local_path.stat().st_size
            self._logger.info(
                "Upload %s (%s) to s3://%s/%s",
                local_path.name,
                _humanfriendly.format_size(size, binary=True),
                self._bucket,
                object_name,
            )
            self._client.upload_file(
                str(local_path),
                self._bucket,
                object_name,
                Config=TransferConfig(multipart_threshold=_MULTIPART_THRESHOLD),
            )
        except (
            botocore.exceptions.BotoCoreError,
            botocore.exceptions.ClientError,
            boto3.exceptions.Boto3Error,
            OSError,
        ) as exc:
            self._logger.error("Upload of %s failed: %s", object_name, exc)
            raise _errors.TransferError(
                f"Failed to upload {object_name} to s3://{self._bucket}: {exc}"
            ) from exc
        self._logger.info("Uploaded s3://%s/%s", self._bucket, object_name)
