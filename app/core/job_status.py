from typing import Dict, Optional
from datetime import datetime, timedelta
import threading
import logging

from app.models.schemas import ConversionJob

logger = logging.getLogger(__name__)

class JobStatusManager:
    def __init__(self):
        self._statuses: Dict[str, ConversionJob] = {}
        self._lock = threading.Lock()

    def update_status(self, job_id: str, status: ConversionJob):
        """ジョブのステータスを更新"""
        with self._lock:
            self._statuses[job_id] = status.model_copy()
        logger.info(f"ジョブ {job_id} のステータスを更新: {status.status.value} ({status.percent_complete}%)")

    def get_status(self, job_id: str) -> Optional[ConversionJob]:
        """ジョブのステータスを取得"""
        with self._lock:
            status = self._statuses.get(job_id)
            return status.model_copy() if status else None

    def delete_status(self, job_id: str):
        """ジョブのステータスを削除"""
        with self._lock:
            self._statuses.pop(job_id, None)

    def cleanup_completed_jobs(self, max_age_seconds: int) -> int:
        """終了済みで一定時間経過したジョブを削除する"""
        threshold = datetime.now() - timedelta(seconds=max_age_seconds)
        with self._lock:
            expired = [
                job_id for job_id, job in self._statuses.items()
                if job.status.is_terminal and job.updated_at < threshold
            ]
            for job_id in expired:
                del self._statuses[job_id]
        if expired:
            logger.info(f"終了済みジョブを削除: {len(expired)}件")
        return len(expired)

# シングルトンインスタンスを作成
job_status_manager = JobStatusManager()
