import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from backend.errors import AppError, GeofenceViolationError, RateLimitedError, WifiViolationError
from backend.models import GpsFix, SessionConstraints

EARTH_RADIUS_METERS = 6_371_000


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def check_geofence(constraints: SessionConstraints | None, gps: GpsFix | None) -> AppError | None:
    if not constraints or not constraints.geofence:
        return None
    fence = constraints.geofence
    if gps is None:
        if constraints.require_gps:
            return GeofenceViolationError("Location is required for this session.")
        return None
    distance = haversine_meters(fence.latitude, fence.longitude, gps.latitude, gps.longitude)
    if distance > fence.radius_meters:
        return GeofenceViolationError(
            f"{round(distance)}m from classroom (limit: {fence.radius_meters:g}m).",
            {"distance_meters": round(distance, 2), "radius_meters": fence.radius_meters},
        )
    return None


def check_wifi(constraints: SessionConstraints | None, bssid: str | None) -> AppError | None:
    if not constraints or not constraints.wifi_allowlist:
        return None
    reading = (bssid or "").strip().lower()
    if not reading:
        if constraints.require_wifi:
            return WifiViolationError("A Wi-Fi reading is required for this session.")
        return None
    allowed = {entry.strip().lower() for entry in constraints.wifi_allowlist if entry.strip()}
    if reading not in allowed:
        return WifiViolationError()
    return None


def check_location(
    constraints: SessionConstraints | None, gps: GpsFix | None, bssid: str | None
) -> AppError | None:
    return check_geofence(constraints, gps) or check_wifi(constraints, bssid)


@dataclass
class _Window:
    started_at: float
    count: int


class RateLimiter:
    """
    Per-key attempt counters over a fixed window, tracked separately for
    device fingerprints and IPs.

    A window opens on the first attempt for a key and resets only once it
    has fully elapsed. Counters live in process memory behind one lock.
    Lapsed windows are swept out at most once per window length.
    """

    def __init__(
        self,
        *,
        window_seconds: int = 60,
        device_max: int = 10,
        ip_max: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.device_max = device_max
        self.ip_max = ip_max
        self.clock = clock
        self._lock = threading.Lock()
        self._device: dict[str, _Window] = {}
        self._ip: dict[str, _Window] = {}
        self._pruned_at = clock()

    def _current(self, counters: dict[str, _Window], key: str, now: float) -> _Window | None:
        window = counters.get(key)
        if window and now - window.started_at >= self.window_seconds:
            counters.pop(key, None)
            return None
        return window

    def _prune(self, now: float) -> None:
        if now - self._pruned_at < self.window_seconds:
            return
        for counters in (self._device, self._ip):
            for key in [k for k, w in counters.items() if now - w.started_at >= self.window_seconds]:
                del counters[key]
        self._pruned_at = now

    def _bump(self, counters: dict[str, _Window], key: str, now: float) -> None:
        window = counters.get(key)
        if window is None:
            counters[key] = _Window(started_at=now, count=1)
        else:
            window.count += 1

    def check(self, device_fingerprint: str, ip: str) -> AppError | None:
        now = self.clock()
        with self._lock:
            self._prune(now)
            device_window = self._current(self._device, device_fingerprint, now)
            if device_window and device_window.count >= self.device_max:
                return RateLimitedError(details={"limit": "DEVICE"})
            ip_window = self._current(self._ip, ip, now)
            if ip_window and ip_window.count >= self.ip_max:
                return RateLimitedError(details={"limit": "IP"})
            self._bump(self._device, device_fingerprint, now)
            self._bump(self._ip, ip, now)
        return None

    def reset(self) -> None:
        with self._lock:
            self._device.clear()
            self._ip.clear()
            self._pruned_at = self.clock()
