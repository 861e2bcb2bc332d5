"""Side effects run when an execution reaches a ``formEnd`` step."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Protocol

from .constants import DEFAULT_CONTENT_ACCESS_DAYS
from .contracts import StepDescriptor
from .persistence.models import ContentAccess, ExecutionRecord
from .persistence.repository import ExecutionRepository

logger = logging.getLogger(__name__)


class FormEndHandler(Protocol):
    """Runs once a ``formEnd`` step becomes current.

    The returned mapping is stored as the step response. Raising leaves the
    step current so the handler can be retried.
    """

    async def handle(
        self, record: ExecutionRecord, step: StepDescriptor, now: datetime
    ) -> Dict[str, Any]:
        ...


def normalize_file(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map the various upload payload shapes onto one file entry."""

    url = raw.get("file_url") or raw.get("url") or raw.get("publicUrl") or ""
    # Uploads sometimes carry the storage host twice.
    if url.count("https://") > 1:
        url = "https://" + url.split("https://")[-1]
    name = raw.get("original_filename") or raw.get("filename") or raw.get("nome")
    return {
        "id": raw.get("id") or raw.get("document_id"),
        "nome": name or "Arquivo",
        "url": url,
        "tipo": raw.get("file_type") or raw.get("tipo") or "application/octet-stream",
        "tamanho": raw.get("file_size") or raw.get("tamanho") or 0,
    }


class ContentAccessFormEndHandler:
    """Grant the patient time-limited access to the node's files."""

    def __init__(
        self,
        repository: ExecutionRepository,
        access_days: int = DEFAULT_CONTENT_ACCESS_DAYS,
    ) -> None:
        self._repository = repository
        self.access_days = access_days

    async def handle(
        self, record: ExecutionRecord, step: StepDescriptor, now: datetime
    ) -> Dict[str, Any]:
        files = [normalize_file(f) for f in step.config.get("arquivos") or []]
        response: Dict[str, Any] = {
            "message": step.config.get("mensagemFinal"),
            "files": len(files),
            "contentAccessId": None,
        }
        if not files:
            logger.info(f"FormEnd {step.node_id} of execution {record.id} has no files")
            return response

        access = ContentAccess(
            id=str(uuid.uuid4()),
            execution_id=record.id,
            patient_id=record.patient_id,
            node_id=step.node_id,
            files=files,
            expires_at=now + timedelta(days=self.access_days),
            created_at=now,
        )
        await self._repository.create_content_access(access)
        logger.info(
            f"Granted content access {access.id} to patient {record.patient_id} "
            f"for {len(files)} file(s) until {access.expires_at.isoformat()}"
        )
        response["contentAccessId"] = access.id
        response["expiresAt"] = access.expires_at.isoformat()
        return response

