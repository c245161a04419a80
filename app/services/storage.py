from app.core.config import Settings, get_settings
from pathlib import Path
from typing import BinaryIO, Optional
import mimetypes
import uuid
import os
import re
import shutil
import logging

settings = get_settings()

logger = logging.getLogger(__name__)

WEBM_EXTENSION = ".webm"
WEBM_MEDIA_TYPE = "video/webm"

_re_job_id = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

def new_job_id() -> str:
    return str(uuid.uuid4())

def validate_job_id(job_id: str) -> str:
    """ジョブIDはファイル名に埋め込まれるため、英数字・ハイフン・アンダースコアのみ許可"""
    if not job_id or not _re_job_id.match(job_id):
        raise ValueError(f"Invalid job id: {job_id!r}")
    return job_id

def ensure_directories(config: Optional[Settings] = None) -> None:
    config = config or settings
    os.makedirs(config.get_upload_dir(), exist_ok=True)
    os.makedirs(config.get_converted_dir(), exist_ok=True)

def get_file_extension(filename: Optional[str]) -> str:
    """拡張子を取得（例: ".mp4"）。拡張子がなければ空文字"""
    if not filename:
        return ""
    ext = os.path.splitext(os.path.basename(filename))[1].lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,10}", ext):
        return ""
    return ext

def staged_input_path(job_id: str, original_filename: Optional[str] = None,
                      config: Optional[Settings] = None) -> Path:
    return Path((config or settings).get_upload_dir()) / f"{validate_job_id(job_id)}{get_file_extension(original_filename)}"

def result_file_name(job_id: str) -> str:
    return f"{validate_job_id(job_id)}{WEBM_EXTENSION}"

def converted_path(job_id: str, config: Optional[Settings] = None) -> Path:
    return Path((config or settings).get_converted_dir()) / result_file_name(job_id)

def stage_upload(input_stream: BinaryIO, job_id: str, original_filename: Optional[str] = None,
                 config: Optional[Settings] = None) -> Path:
    """
    アップロードされたストリームを一時ディレクトリに保存する

    Returns:
        Path: 保存先のパス
    """
    ensure_directories(config)
    target = staged_input_path(job_id, original_filename, config)
    with open(target, "wb") as f:
        shutil.copyfileobj(input_stream, f)
    logger.info(f"Staged upload for job {job_id}: {target} ({target.stat().st_size} bytes)")
    return target

def resolve_converted_file(file_name: str) -> Path:
    """ダウンロード対象の変換済みファイルのパスを解決"""
    # sanitize filename to prevent path traversal
    if not file_name or os.path.basename(file_name) != file_name or file_name in (".", ".."):
        raise ValueError("Invalid filename")
    if os.path.altsep and os.path.altsep in file_name:
        raise ValueError("Invalid filename")
    path = Path(settings.get_converted_dir()) / file_name
    if not path.is_file():
        raise FileNotFoundError(f"File not found {file_name}")
    return path

def media_type_for(file_name: str) -> str:
    if file_name.lower().endswith(WEBM_EXTENSION):
        return WEBM_MEDIA_TYPE
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"
