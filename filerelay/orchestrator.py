import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .logs import sanitize_log_value
from .providers import ProviderAdapter, UploadFailure, UploadSuccess
from .registry import FileRegistry, UploadRecord, generate_file_id

logger = logging.getLogger("filerelay.orchestrator")

SIZE_LIMIT = "size_limit"
ALL_FAILED = "all_failed"


@dataclass
class ProviderError:
    provider: str
    message: str

    def to_payload(self) -> Dict[str, str]:
        return {"provider": self.provider, "message": self.message}

    def __str__(self) -> str:
        return f"{self.provider}: {self.message}"


@dataclass
class OrchestratorResult:
    outcome: Optional[UploadSuccess] = None
    provider: Optional[str] = None
    errors: List[ProviderError] = field(default_factory=list)
    reason: Optional[str] = None
    record: Optional[UploadRecord] = None

    @property
    def success(self) -> bool:
        return self.outcome is not None


class UploadOrchestrator:
    """Try each provider in priority order until one accepts the upload.

    Providers run one after another, never concurrently, so a file is stored
    on at most one host. Every failure is kept, in order, for diagnostics.
    """

    def __init__(self, providers: Sequence[ProviderAdapter], max_upload_bytes: int) -> None:
        self.providers = list(providers)
        self.max_upload_bytes = int(max_upload_bytes)

    def orchestrate(self, payload: bytes, file_name: str, mime_type: str) -> OrchestratorResult:
        safe_name = sanitize_log_value(file_name)
        if len(payload) > self.max_upload_bytes:
            logger.warning(
                "upload_rejected reason=too_large filename=%s size=%d limit=%d",
                safe_name,
                len(payload),
                self.max_upload_bytes,
            )
            return OrchestratorResult(reason=SIZE_LIMIT)

        errors: List[ProviderError] = []
        for provider in self.providers:
            if not provider.enabled:
                continue

            logger.info("provider_attempt provider=%s filename=%s", provider.name, safe_name)
            outcome = provider.upload(payload, file_name, mime_type)
            if isinstance(outcome, UploadSuccess):
                logger.info(
                    "provider_succeeded provider=%s filename=%s attempts=%d",
                    provider.name,
                    safe_name,
                    len(errors) + 1,
                )
                return OrchestratorResult(outcome=outcome, provider=provider.name, errors=errors)

            message = outcome.error_message if isinstance(outcome, UploadFailure) else str(outcome)
            errors.append(ProviderError(provider.name, message))

        logger.error(
            "upload_failed reason=all_providers_failed filename=%s errors=%s",
            safe_name,
            sanitize_log_value("; ".join(str(error) for error in errors)) or "-",
        )
        return OrchestratorResult(errors=errors, reason=ALL_FAILED)


def relay_upload(
    orchestrator: UploadOrchestrator,
    registry: FileRegistry,
    payload: bytes,
    file_name: str,
    mime_type: str,
) -> OrchestratorResult:
    """Orchestrate an upload and register the resulting record on success."""

    result = orchestrator.orchestrate(payload, file_name, mime_type)
    if not result.success:
        return result

    outcome = result.outcome
    record = UploadRecord(
        id=generate_file_id(),
        original_name=file_name,
        url=outcome.url,
        direct_url=outcome.direct_url or outcome.url,
        size=len(payload),
        mime_type=mime_type,
        service=result.provider,
        expiry=outcome.expiry,
        provider_file_id=outcome.provider_file_id,
    )
    result.record = registry.insert(record)
    return result
