from typing import Callable, Dict, List
from dataclasses import dataclass, field
import itertools
import threading
import logging

from app.models.schemas import ProgressEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]

TOPIC_PREFIX = "conversion/"

def topic_for(job_id: str) -> str:
    """ジョブIDから配信トピック名を生成"""
    return f"{TOPIC_PREFIX}{job_id}"

@dataclass(frozen=True)
class Subscription:
    topic: str
    listener: Listener = field(compare=False, repr=False)
    subscription_id: int = 0

class ProgressChannel:
    """
    トピック単位の購読レジストリ (プロセス全体で共有)

    購読前に配信されたイベントは保持しない (再送なし)。
    """

    def __init__(self):
        self._subscribers: Dict[str, Dict[int, Subscription]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, topic: str, listener: Listener) -> Subscription:
        with self._lock:
            subscription = Subscription(topic=topic, listener=listener, subscription_id=next(self._ids))
            self._subscribers.setdefault(topic, {})[subscription.subscription_id] = subscription
        logger.debug(f"Subscribed to {topic} (id={subscription.subscription_id})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._subscribers.get(subscription.topic)
            if listeners is None:
                return
            listeners.pop(subscription.subscription_id, None)
            if not listeners:
                del self._subscribers[subscription.topic]
        logger.debug(f"Unsubscribed from {subscription.topic} (id={subscription.subscription_id})")

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, {}))

    def publish(self, topic: str, event: ProgressEvent) -> int:
        """
        トピックの全購読者にイベントを配信する

        Returns:
            int: 配信に成功した購読者数
        """
        with self._lock:
            listeners: List[Subscription] = list(self._subscribers.get(topic, {}).values())

        delivered = 0
        for subscription in listeners:
            try:
                subscription.listener(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to deliver progress to {topic} (id={subscription.subscription_id}): {str(e)}")
        return delivered

# シングルトンインスタンスを作成
progress_channel = ProgressChannel()
