from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .collaborators import IdentityDirectory
from .config import EngineConfig
from .events import EventBus, EventKind
from .feature_collector import FeatureVectorCollector
from .models import AccessPattern, Activity, BehaviorProfile, ObservationResult, utcnow
from .store import IdentityStore

logger = logging.getLogger(__name__)

ANOMALY_WEIGHTS = {
    "unusual_login_time": 15,
    "unknown_device": 20,
    "unknown_location": 25,
    "abnormal_session_duration": 10,
    "unusual_resource_access": 15,
    "new_resource_access": 10,
}

FeatureContext = Callable[[str], Tuple[int, int]]


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def _push_bounded(items: List[str], value: str, limit: int) -> None:
    if value in items:
        return
    items.append(value)
    while len(items) > limit:
        items.pop(0)


class BehaviorProfileStore:
    """Rolling per-identity baselines and the anomaly checks made against them."""

    def __init__(
        self,
        config: EngineConfig,
        bus: EventBus,
        directory: IdentityDirectory,
        collector: FeatureVectorCollector,
        profiles: Optional[IdentityStore[BehaviorProfile]] = None,
        feature_context: Optional[FeatureContext] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.bus = bus
        self.directory = directory
        self.collector = collector
        if profiles is None:
            profiles = IdentityStore(config.max_identities, config.identity_idle_ttl)
        self.profiles = profiles
        self.feature_context = feature_context
        self.clock = clock

    def get(self, identity_id: str) -> Optional[BehaviorProfile]:
        return self.profiles.peek(identity_id)

    async def observe(self, identity_id: str, activity: Activity) -> ObservationResult:
        profile = self.profiles.get(identity_id, now=self.clock())
        if profile is None:
            profile = await self._create_profile(identity_id)

        anomalies = self.assess(profile, activity)
        score = min(sum(ANOMALY_WEIGHTS[tag] for tag in anomalies), 100)

        previous = profile.last_activity_at
        time_since_last_login = (activity.timestamp - previous).total_seconds() if previous else 0.0

        self.update(profile, activity)
        self._record_anomalies(profile, anomalies)

        failed_logins, privileged_actions = (0, 0)
        if self.feature_context is not None:
            failed_logins, privileged_actions = self.feature_context(identity_id)
        self.collector.collect(
            profile,
            activity,
            anomalies,
            time_since_last_login=time_since_last_login,
            failed_login_count=failed_logins,
            privileged_actions=privileged_actions,
        )
        return ObservationResult(anomalies=anomalies, score=score)

    async def _create_profile(self, identity_id: str) -> BehaviorProfile:
        display_name = "unknown"
        try:
            display_name = await self.directory.display_name(identity_id) or "unknown"
        except Exception as exc:
            logger.warning("Identity lookup failed for %s: %s", identity_id, exc)

        # another task may have created the profile while the lookup was pending
        existing = self.profiles.get(identity_id, now=self.clock())
        if existing is not None:
            return existing

        profile = BehaviorProfile(identity_id=identity_id, display_name=display_name, last_updated=self.clock())
        self.profiles.set(identity_id, profile, self.clock())
        return profile

    def assess(self, profile: BehaviorProfile, activity: Activity) -> List[str]:
        if not profile.baseline_established:
            return []

        config = self.config
        anomalies: List[str] = []

        hour = activity.timestamp.hour
        normal_hour = any(
            frequency > config.normal_hour_frequency and _hour_distance(bucket, hour) <= config.normal_hour_tolerance
            for bucket, frequency in enumerate(profile.login_hours)
        )
        if not normal_hour:
            anomalies.append("unusual_login_time")

        if activity.user_agent not in profile.recent_devices:
            anomalies.append("unknown_device")

        if activity.ip not in profile.recent_locations:
            anomalies.append("unknown_location")

        if activity.session_duration:
            average = profile.average_session_duration
            if abs(activity.session_duration - average) > config.session_deviation_factor * average:
                anomalies.append("abnormal_session_duration")

        if activity.resource:
            pattern = profile.access_patterns.get(activity.resource)
            if pattern is None:
                anomalies.append("new_resource_access")
            elif pattern.weekly_access[activity.timestamp.weekday()] == 0:
                anomalies.append("unusual_resource_access")

        return anomalies

    def update(self, profile: BehaviorProfile, activity: Activity) -> None:
        config = self.config

        profile.login_hours[activity.timestamp.hour] += config.login_hour_increment
        total = sum(profile.login_hours)
        profile.login_hours = [frequency / total for frequency in profile.login_hours]

        if profile.last_ip is not None and profile.last_ip != activity.ip:
            profile.location_changes += 1
        profile.last_ip = activity.ip
        _push_bounded(profile.recent_locations, activity.ip, config.max_recent_locations)
        _push_bounded(profile.recent_devices, activity.user_agent, config.max_recent_devices)

        if activity.session_duration:
            if profile.average_session_duration == 0:
                profile.average_session_duration = float(activity.session_duration)
            else:
                weight = config.session_duration_weight
                profile.average_session_duration = (
                    profile.average_session_duration * (1 - weight) + activity.session_duration * weight
                )

        if activity.resource:
            pattern = profile.access_patterns.get(activity.resource)
            if pattern is None:
                pattern = profile.access_patterns[activity.resource] = AccessPattern(resource=activity.resource)
            pattern.record(activity.timestamp)

        profile.recent_activity.append((activity.timestamp, bool(activity.resource)))
        self._trim_activity(profile, activity.timestamp)

        profile.observation_count += 1
        profile.last_activity_at = activity.timestamp
        profile.last_updated = self.clock()
        self._check_baseline(profile)

    def record_anomalies(self, identity_id: str, tags: List[str]) -> None:
        profile = self.profiles.peek(identity_id)
        if profile is not None:
            self._record_anomalies(profile, tags)

    def refresh_baselines(self) -> int:
        """Trims rolling windows and re-derives baseline state for every profile."""
        now = self.clock()
        refreshed = 0
        for identity_id in self.profiles:
            profile = self.profiles.peek(identity_id)
            if profile is None:
                continue
            if profile.last_activity_at is not None:
                self._trim_activity(profile, profile.last_activity_at)
            self._trim_anomalies(profile, now)
            for pattern in profile.access_patterns.values():
                pattern.average_frequency = sum(pattern.weekly_access) / 7
            self._check_baseline(profile)
            refreshed += 1
        logger.info("Refreshed %d behavior baselines", refreshed)
        return refreshed

    def _check_baseline(self, profile: BehaviorProfile) -> None:
        if profile.baseline_established or profile.data_points() < self.config.baseline_data_points:
            return
        profile.baseline_established = True
        logger.info("Behavior baseline established for %s", profile.identity_id)
        self.bus.publish(EventKind.BASELINE_ESTABLISHED, {"identity_id": profile.identity_id})

    def _record_anomalies(self, profile: BehaviorProfile, tags: List[str]) -> None:
        now = self.clock()
        for tag in tags:
            profile.recent_anomalies.append((now, tag))
        self._trim_anomalies(profile, now)

    def _trim_anomalies(self, profile: BehaviorProfile, now: datetime) -> None:
        window = self.config.recent_anomaly_window
        while profile.recent_anomalies and now - profile.recent_anomalies[0][0] > window:
            profile.recent_anomalies.popleft()

    def _trim_activity(self, profile: BehaviorProfile, now: datetime) -> None:
        window = self.config.scan_window
        while profile.recent_activity and now - profile.recent_activity[0][0] > window:
            profile.recent_activity.popleft()
