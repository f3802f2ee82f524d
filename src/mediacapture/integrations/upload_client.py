# -*- coding: utf-8 -*-
"""Upload destinations: HTTP multipart endpoint and local directory."""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Protocol
from urllib import error, parse, request

from mediacapture.constants import UPLOAD_FIELD_NAME, UPLOAD_MAX_BYTES
from mediacapture.models.artifact import extension_for
from mediacapture.utils.file_utils import ensure_dir, write_bytes_atomic

logger = logging.getLogger(__name__)


class UploadDestination(Protocol):
    """External storage collaborator. `put` returns an opaque locator."""

    def put(self, data: bytes, media_type: str) -> str: ...

    def check_connection(self, timeout: float = 3.0) -> tuple[bool, str]: ...


class HttpUploadDestination:
    """POST recordings as `multipart/form-data` and read the stored URL from the JSON reply."""

    def __init__(
        self,
        endpoint: str,
        *,
        public_base_url: str = "",
        api_token: str = "",
        timeout: float = 60.0,
        max_bytes: int = UPLOAD_MAX_BYTES,
        field_name: str = UPLOAD_FIELD_NAME,
    ) -> None:
        if not endpoint.strip():
            raise ValueError("Upload endpoint is missing.")
        self.endpoint = endpoint.strip()
        self.public_base_url = public_base_url.strip() or _origin(self.endpoint)
        self.api_token = api_token
        self.timeout = float(timeout)
        self.max_bytes = int(max_bytes)
        self.field_name = field_name

    def put(self, data: bytes, media_type: str) -> str:
        if not media_type.lower().startswith("video/"):
            raise ValueError(f"Only video uploads are accepted, got {media_type!r}")
        if len(data) > self.max_bytes:
            raise ValueError(f"Recording is {len(data)} bytes; the upload limit is {self.max_bytes} bytes")

        boundary = uuid.uuid4().hex
        filename = f"recording.{extension_for(media_type)}"
        body_parts = [
            f"--{boundary}\r\n".encode("utf-8"),
            f'Content-Disposition: form-data; name="{self.field_name}"; filename="{filename}"\r\n'.encode("utf-8"),
            f"Content-Type: {media_type}\r\n\r\n".encode("utf-8"),
            data,
            b"\r\n",
            f"--{boundary}--\r\n".encode("utf-8"),
        ]
        payload = b"".join(body_parts)

        headers = {"Content-Type": f"multipart/form-data; boundary={boundary}"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        req = request.Request(self.endpoint, data=payload, headers=headers, method="POST")

        logger.info("Uploading %s bytes (%s) to %s", len(data), media_type, self.endpoint)
        try:
            with request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8", errors="ignore")
        except error.HTTPError as exc:
            err_body = exc.read().decode("utf-8", errors="ignore")
            raise ValueError(f"Upload rejected with HTTP {exc.code}: {err_body[:200]}") from exc

        try:
            reply = json.loads(body) if body else {}
        except json.JSONDecodeError:
            raise ValueError(f"Upload endpoint returned non-JSON response: {body[:200]}") from None
        url = reply.get("url") if isinstance(reply, dict) else None
        if not url:
            raise ValueError("Upload endpoint reply has no 'url'")
        return self._absolute(str(url))

    def check_connection(self, timeout: float = 3.0) -> tuple[bool, str]:
        """Any HTTP answer from the endpoint host counts as reachable."""
        req = request.Request(self.public_base_url or self.endpoint, method="GET")
        try:
            with request.urlopen(req, timeout=timeout) as response:
                status = int(getattr(response, "status", 200))
            return True, f"Upload server reachable (HTTP {status})"
        except error.HTTPError as exc:
            return True, f"Upload server reachable (HTTP {exc.code})"
        except Exception as exc:
            return False, f"Upload server unreachable: {exc}"

    def _absolute(self, url: str) -> str:
        if parse.urlparse(url).scheme:
            return url
        return parse.urljoin(self.public_base_url.rstrip("/") + "/", url.lstrip("/"))


class LocalDirectoryDestination:
    """Store uploads as files in a directory and return their `file://` URI."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def put(self, data: bytes, media_type: str) -> str:
        name = f"recording_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{extension_for(media_type)}"
        path = write_bytes_atomic(self.directory / name, data)
        logger.info("Stored %s bytes at %s", len(data), path)
        return path.resolve().as_uri()

    def check_connection(self, timeout: float = 3.0) -> tuple[bool, str]:
        del timeout
        try:
            ensure_dir(self.directory)
        except OSError as exc:
            return False, f"Upload directory not usable: {exc}"
        if not os.access(self.directory, os.W_OK):
            return False, f"Upload directory not writable: {self.directory}"
        return True, f"Upload directory ready: {self.directory}"


def _origin(url: str) -> str:
    parsed = parse.urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


def destination_from_config(upload: dict[str, Any]) -> HttpUploadDestination | LocalDirectoryDestination:
    """Build the HTTP destination when an endpoint is configured, else the local one."""
    endpoint = str(upload.get("endpoint", "")).strip()
    if endpoint:
        return HttpUploadDestination(
            endpoint,
            public_base_url=str(upload.get("public_base_url", "")),
            api_token=str(upload.get("api_token", "")),
            timeout=float(upload.get("timeout_seconds", 60)),
            max_bytes=int(upload.get("max_bytes", UPLOAD_MAX_BYTES)),
            field_name=str(upload.get("field_name", UPLOAD_FIELD_NAME)),
        )
    return LocalDirectoryDestination(str(upload.get("local_dir", "uploads")))
