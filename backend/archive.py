"""
Bundle completed job results into a single ZIP export.
"""
from __future__ import annotations

import base64
import io
import logging
import zipfile
from datetime import date
from typing import Iterable, Optional

from config import ARCHIVE_PREFIX
from schemas import Job, JobStatus, JobType

logger = logging.getLogger("archive")


def result_extension(job_type: JobType) -> str:
    return "mp4" if job_type == JobType.generate_video else "png"


def entry_name(job: Job) -> str:
    return f"{job.type.value}-{job.id}.{result_extension(job.type)}"


def archive_filename(today: Optional[date] = None) -> str:
    return f"{ARCHIVE_PREFIX}-{(today or date.today()).isoformat()}.zip"


def decode_result(result: str) -> tuple[str, bytes]:
    """Split a data-URI result into (mime, raw bytes)."""
    if result.startswith("data:") and "," in result:
        header, payload = result.split(",", 1)
        mime = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
        return mime, base64.b64decode(payload)
    return "application/octet-stream", base64.b64decode(result)


def exportable(jobs: Iterable[Job]) -> list[Job]:
    return [j for j in jobs if j.status == JobStatus.completed and j.result]


def build_archive(jobs: Iterable[Job]) -> bytes:
    """
    ZIP the results of every completed job.
    Jobs without a result (or not completed) are skipped.
    """
    buf = io.BytesIO()
    written = 0
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for job in exportable(jobs):
            try:
                _, content = decode_result(job.result)
            except ValueError as exc:
                logger.warning("archive_entry_skipped job_id=%s error=%s", job.id, exc)
                continue
            zf.writestr(entry_name(job), content)
            written += 1
    logger.info("archive_built entries=%s bytes=%s", written, buf.tell())
    return buf.getvalue()
