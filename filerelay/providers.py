import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

import requests

from .config import BYTES_PER_MB, LITTERBOX_RETENTIONS
from .logs import sanitize_log_value

logger = logging.getLogger("filerelay.providers")

DEFAULT_UPLOAD_TIMEOUT_SECONDS = 60
DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 10


class ProviderResponseError(RuntimeError):
    """Raised inside an adapter when a provider reports a failed upload."""


@dataclass
class UploadSuccess:
    url: str
    direct_url: Optional[str] = None
    provider_file_id: Optional[str] = None
    expiry: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.direct_url:
            self.direct_url = self.url


@dataclass
class UploadFailure:
    error_message: str


UploadOutcome = Union[UploadSuccess, UploadFailure]


def _parse_timestamp(value: Any) -> Optional[float]:
    """Parse an ISO-8601 string or epoch number into epoch seconds."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in JSON APIs.
        return float(value) / 1000 if value > 1e11 else float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def _dig(data: Any, *path: str) -> Any:
    """Follow nested dict keys, returning None when any step is missing."""

    result = data
    for key in path:
        if not isinstance(result, dict):
            return None
        result = result.get(key)
        if result is None:
            return None
    return result


def _is_locator(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(("http://", "https://"))


def _check_locators(provider: str, outcome: UploadSuccess) -> None:
    """Reject a success whose url or direct url is not an http(s) link."""

    for value in (outcome.url, outcome.direct_url):
        if not _is_locator(value):
            raise ProviderResponseError(
                f"{provider} returned an invalid URL: {str(value)[:100]!r}"
            )


class ProviderAdapter:
    """Base class for one external file host.

    Subclasses implement :meth:`_upload`, which may raise freely; :meth:`upload`
    converts every error into an :class:`UploadFailure`.
    """

    name = "provider"
    default_endpoint = ""

    def __init__(
        self,
        *,
        endpoint: Optional[str] = None,
        enabled: bool = True,
        max_size: Optional[int] = None,
        timeout: float = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint or self.default_endpoint
        self.enabled = enabled
        self.max_size = max_size
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} enabled={self.enabled}>"

    def upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        if self.max_size is not None and len(payload) > self.max_size:
            return UploadFailure(
                f"File size {len(payload)} exceeds {self.name} limit of {self.max_size} bytes"
            )

        try:
            outcome = self._upload(payload, file_name, mime_type)
            if isinstance(outcome, UploadSuccess):
                _check_locators(self.name, outcome)
            return outcome
        except requests.Timeout:
            message = f"Request timed out after {self.timeout} seconds"
        except requests.RequestException as error:
            message = str(error) or type(error).__name__
        except ProviderResponseError as error:
            message = str(error)
        except (ValueError, KeyError, TypeError) as error:
            message = f"Malformed response: {error}"
        except Exception as error:
            logger.exception("provider_unexpected_error provider=%s", self.name)
            message = f"Unexpected error: {error}"

        logger.warning(
            "provider_upload_failed provider=%s filename=%s error=%s",
            self.name,
            sanitize_log_value(file_name),
            sanitize_log_value(message),
        )
        return UploadFailure(message)

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        raise NotImplementedError

    def delete_remote(self, record: Any) -> bool:
        """Remove the provider-side copy of *record*; False when unsupported."""

        return False

    def _post_file(
        self,
        url: str,
        payload: bytes,
        file_name: str,
        mime_type: str,
        *,
        field_name: str = "file",
        data: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        response = self.session.post(
            url,
            files={field_name: (file_name, payload, mime_type)},
            data=data,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response


class FileIOAdapter(ProviderAdapter):
    name = "file.io"
    default_endpoint = "https://file.io"

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        data = self._post_file(self.endpoint, payload, file_name, mime_type).json()
        if not isinstance(data, dict):
            raise ProviderResponseError("Unexpected response from file.io")
        if data.get("success") is False:
            raise ProviderResponseError(str(data.get("message") or "Upload failed"))

        link = data["link"]
        return UploadSuccess(
            url=link,
            direct_url=link,
            provider_file_id=data.get("key"),
            expiry=_parse_timestamp(data.get("expires")),
        )


class GoFileAdapter(ProviderAdapter):
    """GoFile assigns an upload server per request, so uploads take two calls."""

    name = "gofile"
    default_endpoint = "https://{server}.gofile.io/uploadFile"
    default_server_url = "https://api.gofile.io/getServer"

    def __init__(
        self,
        *,
        server_url: Optional[str] = None,
        discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.server_url = server_url or self.default_server_url
        self.discovery_timeout = discovery_timeout

    def discover_server(self) -> str:
        try:
            response = self.session.get(self.server_url, timeout=self.discovery_timeout)
            response.raise_for_status()
            server = _dig(response.json(), "data", "server")
        except (requests.RequestException, ValueError) as error:
            raise ProviderResponseError(f"Could not find a GoFile server: {error}") from error
        if not server or not isinstance(server, str):
            raise ProviderResponseError("Could not find a GoFile server")
        return server

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        server = self.discover_server()
        upload_url = self.endpoint.replace("{server}", server)
        data = self._post_file(upload_url, payload, file_name, mime_type).json()

        if _dig(data, "status") != "ok":
            raise ProviderResponseError(str(_dig(data, "message") or "Upload failed"))

        remote_id = _dig(data, "data", "fileId")
        if not remote_id or not isinstance(remote_id, str):
            raise ProviderResponseError("GoFile response did not include a file id")
        url = f"https://{server}.gofile.io/download/{remote_id}/{file_name}"
        return UploadSuccess(url=url, direct_url=url, provider_file_id=remote_id)


class TmpNinjaAdapter(ProviderAdapter):
    name = "tmp.ninja"
    default_endpoint = "https://tmp.ninja/api.php?d=upload"

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        response = self._post_file(self.endpoint, payload, file_name, mime_type)
        try:
            data = response.json()
        except ValueError:
            data = response.text.strip()

        if isinstance(data, dict):
            url = _dig(data, "file", "url", "full") or data.get("url")
        else:
            url = data
        if not url or not isinstance(url, str):
            raise ProviderResponseError("tmp.ninja response did not include a URL")
        return UploadSuccess(url=url)


class AnonFilesAdapter(ProviderAdapter):
    name = "anonfiles"
    default_endpoint = "https://api.anonfiles.com/upload"

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        data = self._post_file(self.endpoint, payload, file_name, mime_type).json()
        if not _dig(data, "status"):
            raise ProviderResponseError(
                str(_dig(data, "error", "message") or "Upload failed")
            )

        file_info = data["data"]["file"]
        url = file_info["url"]["full"]
        return UploadSuccess(
            url=url,
            direct_url=_dig(file_info, "url", "short") or url,
            provider_file_id=_dig(file_info, "metadata", "id"),
        )


class CatboxAdapter(ProviderAdapter):
    """Durable host; files uploaded with a userhash can be deleted later."""

    name = "catbox"
    default_endpoint = "https://catbox.moe/user/api.php"

    def __init__(self, *, userhash: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.userhash = userhash

    def _form(self, **fields: str) -> Dict[str, str]:
        if self.userhash:
            fields["userhash"] = self.userhash
        return fields

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        response = self._post_file(
            self.endpoint,
            payload,
            file_name,
            mime_type,
            field_name="fileToUpload",
            data=self._form(reqtype="fileupload"),
        )
        url = response.text.strip()
        if not url.startswith("http"):
            raise ProviderResponseError(url or "Upload failed")
        return UploadSuccess(url=url, provider_file_id=url.rsplit("/", 1)[-1])

    def delete_remote(self, record: Any) -> bool:
        remote_name = getattr(record, "provider_file_id", None)
        if not self.userhash or not remote_name:
            return False
        try:
            response = self.session.post(
                self.endpoint,
                data=self._form(reqtype="deletefiles", files=remote_name),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as error:
            logger.warning(
                "remote_delete_failed provider=%s remote_id=%s error=%s",
                self.name,
                remote_name,
                error,
            )
            return False
        return True


class LitterboxAdapter(ProviderAdapter):
    name = "litterbox"
    default_endpoint = "https://litterbox.catbox.moe/resources/internals/api.php"

    def __init__(self, *, retention: str = "24h", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.retention = retention if retention in LITTERBOX_RETENTIONS else "24h"

    def _upload(self, payload: bytes, file_name: str, mime_type: str) -> UploadOutcome:
        response = self._post_file(
            self.endpoint,
            payload,
            file_name,
            mime_type,
            field_name="fileToUpload",
            data={"reqtype": "fileupload", "time": self.retention},
        )
        url = response.text.strip()
        if not url.startswith("http"):
            raise ProviderResponseError(url or "Upload failed")
        return UploadSuccess(
            url=url,
            provider_file_id=url.rsplit("/", 1)[-1],
            expiry=time.time() + LITTERBOX_RETENTIONS[self.retention],
        )


ADAPTER_CLASSES = {
    "file_io": FileIOAdapter,
    "gofile": GoFileAdapter,
    "tmp_ninja": TmpNinjaAdapter,
    "anonfiles": AnonFilesAdapter,
    "catbox": CatboxAdapter,
    "litterbox": LitterboxAdapter,
}


def build_provider(
    key: str,
    entry: Mapping[str, Any],
    *,
    timeout: float = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> ProviderAdapter:
    kwargs: Dict[str, Any] = {
        "endpoint": entry.get("endpoint") or None,
        "enabled": bool(entry.get("enabled", True)),
        "timeout": timeout,
        "session": session,
    }
    if entry.get("max_size_mb"):
        kwargs["max_size"] = int(float(entry["max_size_mb"]) * BYTES_PER_MB)
    if key == "gofile":
        kwargs["server_url"] = entry.get("server_url") or None
        kwargs["discovery_timeout"] = discovery_timeout
    elif key == "catbox":
        kwargs["userhash"] = entry.get("userhash") or ""
    elif key == "litterbox":
        kwargs["retention"] = entry.get("retention") or "24h"
    return ADAPTER_CLASSES[key](**kwargs)


def build_provider_chain(
    config: Mapping[str, Any],
    session: Optional[requests.Session] = None,
) -> List[ProviderAdapter]:
    """Instantiate the enabled adapters in configured priority order."""

    providers = config.get("providers") or {}
    chain: List[ProviderAdapter] = []
    for key in config.get("provider_order") or ():
        if key not in ADAPTER_CLASSES:
            logger.warning("provider_unknown name=%s", key)
            continue
        entry = providers.get(key) or {}
        if not entry.get("enabled"):
            continue
        chain.append(
            build_provider(
                key,
                entry,
                timeout=config.get("provider_timeout_seconds", DEFAULT_UPLOAD_TIMEOUT_SECONDS),
                discovery_timeout=config.get(
                    "discovery_timeout_seconds", DEFAULT_DISCOVERY_TIMEOUT_SECONDS
                ),
                session=session,
            )
        )
    logger.info("provider_chain_built providers=%s", ",".join(p.name for p in chain) or "-")
    return chain
