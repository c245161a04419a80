from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime

class ConversionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ConversionStatus.COMPLETE, ConversionStatus.ERROR)

class ConversionJob(BaseModel):
    job_id: str
    input_path: str
    output_path: str
    status: ConversionStatus = ConversionStatus.PENDING
    percent_complete: int = 0  # 0-100
    message: str = "ジョブを初期化しました"
    result_file: Optional[str] = None  # Complete時のみ
    original_filename: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

class ProgressEvent(BaseModel):
    """Immutable progress update for one job, serialized to subscribers."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(alias="fileId")
    percent: int = Field(alias="percentComplete", ge=0, le=100)
    status: ConversionStatus
    message: str
    result_file: Optional[str] = Field(default=None, alias="resultFile")
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_payload(self) -> Dict[str, Any]:
        """Wire format: {fileId, percentComplete, status, message, resultFile?}"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"timestamp"})

class WebMConversionResponse(BaseModel):
    fileName: str
    fileId: str
    fileDownloadUri: str
    fileType: str = "video/webm"
    size: str

class JobSnapshot(BaseModel):
    fileId: str
    status: ConversionStatus
    percentComplete: int
    message: str
    resultFile: Optional[str] = None
    created_at: datetime
    updated_at: datetime
