"""
Unit tests for backend/archive.py
"""
import base64
import io
import sys
import zipfile
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

BACKEND = str(Path(__file__).parent.parent)
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)

from archive import archive_filename, build_archive, decode_result, entry_name, exportable
from schemas import Job, JobPayload, JobStatus, JobType

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42"


def _job(job_id, job_type=JobType.text_to_image, status=JobStatus.completed, result=None):
    return Job(
        id=job_id,
        type=job_type,
        status=status,
        payload=JobPayload(prompt="x"),
        result=result,
        created_at=datetime.now(timezone.utc),
    )


def _data_uri(mime: str, raw: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode()}"


def test_archive_filename_uses_date():
    assert archive_filename(date(2025, 3, 7)) == "NC-Tool-Export-2025-03-07.zip"


def test_entry_name_extension_follows_type():
    assert entry_name(_job("job-a")) == "text-to-image-job-a.png"
    assert entry_name(_job("job-v", JobType.generate_video)) == "generate-video-job-v.mp4"


def test_decode_result_data_uri():
    mime, raw = decode_result(_data_uri("image/webp", PNG_BYTES))
    assert mime == "image/webp"
    assert raw == PNG_BYTES


def test_decode_result_rejects_garbage():
    with pytest.raises(ValueError):
        decode_result("data:image/png;base64,abc")


def test_exportable_only_completed_with_result():
    jobs = [
        _job("job-1", result=_data_uri("image/png", PNG_BYTES)),
        _job("job-2", status=JobStatus.failed),
        _job("job-3", status=JobStatus.pending),
        _job("job-4", result=None),
    ]
    assert [j.id for j in exportable(jobs)] == ["job-1"]


def test_build_archive_contents():
    jobs = [
        _job("job-1", result=_data_uri("image/png", PNG_BYTES)),
        _job("job-2", JobType.generate_video, result=_data_uri("video/mp4", MP4_BYTES)),
        _job("job-3", status=JobStatus.failed),
    ]
    data = build_archive(jobs)

    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ["generate-video-job-2.mp4", "text-to-image-job-1.png"]
        assert zf.read("text-to-image-job-1.png") == PNG_BYTES
        assert zf.read("generate-video-job-2.mp4") == MP4_BYTES


def test_build_archive_skips_undecodable_results():
    jobs = [
        _job("job-1", result="data:image/png;base64,abc"),
        _job("job-2", result=_data_uri("image/png", PNG_BYTES)),
    ]
    with zipfile.ZipFile(io.BytesIO(build_archive(jobs))) as zf:
        assert zf.namelist() == ["text-to-image-job-2.png"]
