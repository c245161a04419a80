from typing import Optional
import logging

from app.core.progress_channel import ProgressChannel, progress_channel, topic_for
from app.models.schemas import ConversionStatus, ProgressEvent

logger = logging.getLogger(__name__)

class ProgressBroadcaster:
    """Republishes job progress to the job's topic. Never raises."""

    def __init__(self, channel: Optional[ProgressChannel] = None):
        self.channel = channel or progress_channel

    def publish(
        self,
        job_id: str,
        percent: int,
        status: ConversionStatus,
        message: str,
        result_file: Optional[str] = None,
    ) -> Optional[ProgressEvent]:
        destination = topic_for(job_id)
        try:
            event = ProgressEvent(
                job_id=job_id,
                percent=max(0, min(100, int(percent))),
                status=ConversionStatus(status),
                message=message,
                result_file=result_file,
            )
            logger.info(f"Sending progress update to {destination}: {event.percent}% - {message}")
            self.channel.publish(destination, event)
            return event
        except Exception as e:
            logger.error(f"Failed to send progress update for file {job_id}: {str(e)}")
            return None

progress_broadcaster = ProgressBroadcaster()
