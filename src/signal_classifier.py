"""
Classification of raw scale samples.

The scale answers each poll with a frame whose last two service bytes say
whether the reading has settled. Only settled readings may drive checklist
transitions; everything else is shown to the operator but not acted on.
On top of the frame flags the classifier rejects readings that are too
old to trust and sudden jumps far from the last accepted weight, which
usually mean something was dropped on or lifted off the platform mid-frame.

VTA-60 frames (decode_vta_frame) are 18 bytes without header: three groups
of six decimal digit bytes (mass, price, total), least significant digit
first.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from logger import get_logger
from models import WeightSample
from shared.clock import to_epoch_seconds

logger = get_logger(__name__)

WEIGHT_CACHE_DURATION_MS = 500
ACTIVE_POLLING_INTERVAL_MS = 1000
AMPLITUDE_SPIKE_THRESHOLD = 5.0  # kg
SPIKE_CONFIRM_SAMPLES = 3
SPIKE_AGREEMENT = 0.05  # kg

STABLE_SUFFIX = b'\x00\x00'
UNSTABLE_SUFFIX = b'\x00\x04'

VTA_FRAME_LENGTH = 18

# Classification statuses
STABLE = 'stable'
UNSTABLE = 'unstable'
WARNING = 'warning'
STALE = 'stale'
DISCONNECTED = 'disconnected'
ERROR = 'error'


@dataclass(frozen=True)
class Classification:
    status: str
    display_weight: Optional[float] = None
    accepted_weight: Optional[float] = None
    is_stable: bool = False
    is_unstable: bool = False
    warning: bool = False
    is_stale: bool = False
    raw_hex: str = ''
    reason: str = ''


def to_hex(raw: bytes) -> str:
    return ' '.join(f'{b:02X}' for b in raw)


def _digits_to_number(group: bytes) -> Optional[int]:
    value = 0
    for byte in reversed(group):
        digit = byte & 0x0F
        if digit > 9:
            return None
        value = value * 10 + digit
    return value


def decode_vta_frame(raw: bytes) -> Tuple[Optional[float], Optional[float], Optional[float]]:
    """
    Decode an 18-byte VTA-60 answer frame.

    Returns:
        (mass_kg, price, total); a group holding a non-decimal digit decodes
        to None

    Raises:
        ValueError: If the frame is not 18 bytes long
    """
    raw = bytes(raw)
    if len(raw) != VTA_FRAME_LENGTH:
        raise ValueError(f"VTA-60 frame must be {VTA_FRAME_LENGTH} bytes, got {len(raw)}")

    mass, price, total = (_digits_to_number(raw[i:i + 6]) for i in (0, 6, 12))
    return (
        mass / 1000.0 if mass is not None else None,
        price / 100.0 if price is not None else None,
        total / 100.0 if total is not None else None,
    )


def analyze_suffix(raw: bytes, weight: Optional[float]) -> Tuple[bool, bool, str]:
    """
    Read frame stability from the service bytes.

    Returns:
        (is_stable, is_unstable, reason)
    """
    if len(raw) < 2:
        return False, False, 'Not enough data'

    suffix = raw[-2:]
    stable_flag = suffix == STABLE_SUFFIX
    known_unstable = suffix == UNSTABLE_SUFFIX
    other_unstable = not stable_flag and not known_unstable

    # A settled zero with digits inside the frame is a zero the scale has not really reached
    fake_zero = stable_flag and weight == 0 and len(raw) > 2 and any(raw[:-2])

    is_unstable = known_unstable or other_unstable or fake_zero
    reason = ''
    if other_unstable:
        reason = f'Unstable frame: unknown suffix {to_hex(suffix)}'
    elif fake_zero:
        reason = 'Unstable frame: zero weight with non-zero inner bytes'
    elif known_unstable:
        reason = 'Unstable frame: suffix 00 04'
    return stable_flag and not is_unstable, is_unstable, reason


class SignalClassifier:
    """
    Stateful classifier for one scale.

    Args:
        clock: Object with now() -> epoch seconds
        weight_cache_duration_ms, active_polling_interval_ms: A sample older
            than the larger of the cache duration and two poll intervals is stale
        amplitude_spike_threshold: Jump (kg) from the last accepted weight
            treated as a spike
        spike_confirm_samples: Consecutive agreeing spike readings after
            which the new level is accepted
    """

    def __init__(self, clock, weight_cache_duration_ms: int = WEIGHT_CACHE_DURATION_MS,
                 active_polling_interval_ms: int = ACTIVE_POLLING_INTERVAL_MS,
                 amplitude_spike_threshold: float = AMPLITUDE_SPIKE_THRESHOLD,
                 spike_confirm_samples: int = SPIKE_CONFIRM_SAMPLES):
        self.clock = clock
        self.stale_after = max(weight_cache_duration_ms, 2 * active_polling_interval_ms) / 1000.0
        self.amplitude_spike_threshold = amplitude_spike_threshold
        self.spike_confirm_samples = max(1, spike_confirm_samples)

        self.last_accepted: Optional[float] = None
        self.display_weight: Optional[float] = None
        self._spike_level: Optional[float] = None
        self._spike_count = 0

    @classmethod
    def from_settings(cls, clock, settings) -> 'SignalClassifier':
        return cls(
            clock,
            weight_cache_duration_ms=settings.weight_cache_duration_ms,
            active_polling_interval_ms=settings.active_polling_interval_ms,
            amplitude_spike_threshold=settings.amplitude_spike_threshold_kg,
            spike_confirm_samples=settings.spike_confirm_samples,
        )

    def reset(self):
        self.last_accepted = None
        self.display_weight = None
        self._clear_spike()

    def _clear_spike(self):
        self._spike_level = None
        self._spike_count = 0

    def _result(self, status: str, raw_hex: str = '', reason: str = '', **flags) -> Classification:
        return Classification(
            status=status,
            display_weight=self.display_weight,
            accepted_weight=flags.pop('accepted_weight', None),
            raw_hex=raw_hex,
            reason=reason,
            **flags,
        )

    def classify(self, sample: Optional[WeightSample], connected: bool = True) -> Classification:
        """
        Classify one sample; only a ``stable`` result carries accepted_weight.
        """
        if not connected or sample is None:
            self._clear_spike()
            return self._result(DISCONNECTED, reason='Scale not connected')

        raw = bytes(sample.raw_bytes or b'')
        raw_hex = to_hex(raw)

        timestamp = to_epoch_seconds(sample.timestamp)
        if timestamp is not None and self.clock.now() - timestamp > self.stale_after:
            return self._result(STALE, raw_hex, f'Sample older than {self.stale_after:.1f}s',
                                is_stale=True)

        if len(raw) < 2 or sample.weight is None:
            self._clear_spike()
            return self._result(ERROR, raw_hex, 'No service bytes in frame')

        weight = sample.weight
        is_stable, is_unstable, reason = analyze_suffix(raw, weight)

        if not is_stable:
            self._clear_spike()
            self.display_weight = weight
            return self._result(UNSTABLE, raw_hex, reason, is_unstable=is_unstable)

        if self.last_accepted is not None and abs(weight - self.last_accepted) > self.amplitude_spike_threshold:
            if self._spike_level is not None and abs(weight - self._spike_level) <= SPIKE_AGREEMENT:
                self._spike_count += 1
            else:
                self._spike_level = weight
                self._spike_count = 1

            if self._spike_count < self.spike_confirm_samples:
                logger.debug(
                    f"Spike {weight:.3f} kg vs accepted {self.last_accepted:.3f} kg "
                    f"({self._spike_count}/{self.spike_confirm_samples})"
                )
                return self._result(WARNING, raw_hex,
                                    f'Jump of {abs(weight - self.last_accepted):.3f} kg ignored',
                                    warning=True)
            logger.info(f"New weight level {weight:.3f} kg confirmed after {self._spike_count} samples")

        self._clear_spike()
        self.last_accepted = weight
        self.display_weight = weight
        return self._result(STABLE, raw_hex, is_stable=True, accepted_weight=weight)
