from __future__ import annotations

import logging
from typing import List, Sequence

from .events import EventBus, EventKind
from .models import Activity, BehaviorProfile, FeatureLabel, MLFeatureVector

logger = logging.getLogger(__name__)


def label_for(anomalies: Sequence[str]) -> FeatureLabel:
    if len(anomalies) >= 4:
        return FeatureLabel.MALICIOUS
    if len(anomalies) >= 3:
        return FeatureLabel.SUSPICIOUS
    return FeatureLabel.NORMAL


class FeatureVectorCollector:
    """Buffers engineered per-event feature vectors for an offline training pipeline."""

    def __init__(self, bus: EventBus, buffer_size: int = 10_000):
        self.bus = bus
        self.buffer_size = buffer_size
        self.buffer: List[MLFeatureVector] = []

    def collect(
        self,
        profile: BehaviorProfile,
        activity: Activity,
        anomalies: Sequence[str],
        *,
        time_since_last_login: float = 0.0,
        failed_login_count: int = 0,
        privileged_actions: int = 0,
    ) -> MLFeatureVector:
        vector = self._featurize(
            profile,
            activity,
            anomalies,
            time_since_last_login=time_since_last_login,
            failed_login_count=failed_login_count,
            privileged_actions=privileged_actions,
        )
        self.buffer.append(vector)
        if len(self.buffer) >= self.buffer_size:
            self.flush()
        return vector

    def flush(self) -> int:
        if not self.buffer:
            return 0
        batch, self.buffer = self.buffer, []
        logger.info("Flushing %d feature vectors for training", len(batch))
        self.bus.publish(EventKind.ML_DATA_READY, {"count": len(batch), "data": batch})
        return len(batch)

    def _featurize(
        self,
        profile: BehaviorProfile,
        activity: Activity,
        anomalies: Sequence[str],
        *,
        time_since_last_login: float,
        failed_login_count: int,
        privileged_actions: int,
    ) -> MLFeatureVector:
        window_minutes = 60.0
        recent = list(profile.recent_activity)
        location_change_rate = profile.location_changes / profile.observation_count if profile.observation_count else 0.0
        return MLFeatureVector(
            identity_id=profile.identity_id,
            timestamp=activity.timestamp,
            login_hour=activity.timestamp.hour,
            login_day_of_week=activity.timestamp.weekday(),
            session_duration=activity.session_duration or 0.0,
            failed_login_count=failed_login_count,
            unique_ips=len(profile.recent_locations),
            unique_devices=len(profile.recent_devices),
            api_call_rate=len(recent) / window_minutes,
            data_access_volume=sum(1 for _, touched_resource in recent if touched_resource),
            privileged_actions=privileged_actions,
            time_since_last_login=time_since_last_login,
            location_change_rate=location_change_rate,
            abnormal_time_login="unusual_login_time" in anomalies,
            new_device="unknown_device" in anomalies,
            new_location="unknown_location" in anomalies,
            label=label_for(anomalies),
        )
