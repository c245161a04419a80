from pathlib import Path
from typing import BinaryIO, List, Optional
from datetime import datetime
import logging
import threading

from app.core.config import Settings, get_settings
from app.core.exceptions import ConversionFailed, FatalIOFailure
from app.core.job_status import JobStatusManager, job_status_manager
from app.models.schemas import ConversionJob, ConversionStatus
from app.services import storage
from app.services.cleanup import remove_staged_input
from app.services.progress_broadcaster import ProgressBroadcaster, progress_broadcaster
from app.services.strategies import ConversionStrategy, default_strategies

# ロガーの設定
logger = logging.getLogger(__name__)

class JobReporter:
    """
    1ジョブ分の進捗を記録・配信する

    - 進捗率は0-100に丸める
    - 終了イベント (complete / error) は1回のみ、それ以降のイベントは破棄
    - error時は最後に報告された進捗率を維持する
    """

    def __init__(self, job: ConversionJob, broadcaster: ProgressBroadcaster, status_manager: JobStatusManager):
        self.job = job
        self.broadcaster = broadcaster
        self.status_manager = status_manager
        self._lock = threading.Lock()
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def __call__(self, percent: Optional[int], message: str) -> None:
        self.processing(percent, message)

    def processing(self, percent: Optional[int], message: str) -> None:
        self._emit(ConversionStatus.PROCESSING, percent, message)

    def complete(self, result_file: str) -> None:
        self._emit(ConversionStatus.COMPLETE, 100, "Conversion completed successfully", result_file)

    def error(self, message: str) -> None:
        self._emit(ConversionStatus.ERROR, None, message)

    def _emit(self, status: ConversionStatus, percent: Optional[int], message: str,
              result_file: Optional[str] = None) -> None:
        with self._lock:
            if self._terminated:
                logger.warning(f"Dropping progress for finished job {self.job.job_id}: {message}")
                return
            if percent is not None:
                self.job.percent_complete = max(0, min(100, int(percent)))
            self.job.status = status
            self.job.message = message
            if result_file is not None:
                self.job.result_file = result_file
            self.job.updated_at = datetime.now()
            self._terminated = status.is_terminal

            self.status_manager.update_status(self.job.job_id, self.job)
            self.broadcaster.publish(
                self.job.job_id,
                self.job.percent_complete,
                status,
                message,
                result_file=self.job.result_file if status == ConversionStatus.COMPLETE else None,
            )

class ConversionOrchestrator:
    """Runs the strategies in priority order and owns the job lifecycle."""

    def __init__(
        self,
        strategies: Optional[List[ConversionStrategy]] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        status_manager: Optional[JobStatusManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.strategies = strategies if strategies is not None else default_strategies(self.settings)
        self.broadcaster = broadcaster or progress_broadcaster
        self.status_manager = status_manager or job_status_manager

    def resolve_job_id(self, client_job_id: Optional[str] = None) -> str:
        """クライアント指定のIDがあればそれを、なければ新規に生成"""
        if client_job_id:
            return storage.validate_job_id(client_job_id)
        return storage.new_job_id()

    def reporter_for(self, job: ConversionJob) -> JobReporter:
        return JobReporter(job, self.broadcaster, self.status_manager)

    def stage_input(self, input_stream: BinaryIO, client_job_id: Optional[str] = None,
                    original_filename: Optional[str] = None) -> ConversionJob:
        """
        アップロードされた入力を一時ディレクトリに保存し、ジョブを作成する

        Raises:
            ValueError: ジョブIDが不正な場合
            ConversionFailed: 入力を保存できなかった場合
        """
        job_id = self.resolve_job_id(client_job_id)
        self.status_manager.cleanup_completed_jobs(self.settings.job_retention_seconds)

        job = ConversionJob(
            job_id=job_id,
            input_path=str(storage.staged_input_path(job_id, original_filename, self.settings)),
            output_path=str(storage.converted_path(job_id, self.settings)),
            original_filename=original_filename,
        )
        try:
            storage.stage_upload(input_stream, job_id, original_filename, self.settings)
        except OSError as e:
            error = FatalIOFailure(f"Could not store uploaded file: {str(e)}", job_id=job_id)
            logger.error(f"エラー発生: job_id={job_id}, error={error.message}")
            self.reporter_for(job).error(f"Conversion failed: {error.message}")
            remove_staged_input(job.input_path)
            raise ConversionFailed(error.message, job_id=job_id) from e

        self.status_manager.update_status(job_id, job)
        return job

    def run(self, job: ConversionJob) -> str:
        """
        ステージ済みの入力をWebMに変換する

        Returns:
            str: 変換後のファイル名

        Raises:
            ConversionFailed: すべての変換方法が失敗した場合
        """
        reporter = self.reporter_for(job)
        input_path = Path(job.input_path)
        output_path = Path(job.output_path)
        result_file = output_path.name

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            reporter.processing(0, "Starting conversion")

            last_failure = "No conversion strategy available"
            succeeded = False
            for strategy in self.strategies:
                reporter.processing(None, f"Trying {strategy.name} conversion")
                logger.info(f"Job {job.job_id}: trying {strategy.name}")
                try:
                    if strategy.convert(input_path, output_path, job.job_id, reporter) and self._has_output(output_path):
                        succeeded = True
                        break
                    last_failure = f"{strategy.name} conversion produced no output"
                except Exception as e:
                    last_failure = f"{strategy.name} failed: {str(e)}"
                    logger.warning(f"Job {job.job_id}: {last_failure}")
                reporter.processing(None, last_failure)

            if not succeeded:
                reporter.error(f"Conversion failed: {last_failure}")
                raise ConversionFailed(last_failure, job_id=job.job_id)

            remove_staged_input(input_path)
            reporter.complete(result_file)
            logger.info(f"Job {job.job_id} converted: {output_path}")
            return result_file
        finally:
            remove_staged_input(input_path)
            if not reporter.terminated:
                reporter.error("Conversion interrupted")

    def convert(self, input_stream: BinaryIO, client_job_id: Optional[str] = None,
                original_filename: Optional[str] = None) -> str:
        job = self.stage_input(input_stream, client_job_id, original_filename)
        return self.run(job)

    @staticmethod
    def _has_output(output_path: Path) -> bool:
        return output_path.is_file() and output_path.stat().st_size > 0

def run_conversion_job(orchestrator: ConversionOrchestrator, job: ConversionJob) -> None:
    """バックグラウンドタスク用。失敗は進捗チャネルでのみ通知する"""
    try:
        orchestrator.run(job)
    except ConversionFailed as e:
        logger.error(f"WebM変換中にエラーが発生しました: job_id={e.job_id}, error={e.message}")

conversion_orchestrator = ConversionOrchestrator()
