"""
Configuration loading for the Order Assembly engine.

Settings live in config.ini next to the application, read with
configparser the same way the logging settings are. A missing file or
section falls back to the defaults below (the values the scales and
scanners in the warehouse were tuned for); a value that is present but
cannot be parsed raises ConfigurationError so a typo never silently
changes tolerance arithmetic.

Example config.ini:

    [Tolerance]
    Type = combined
    MaxToleranceGrams = 30
    MinToleranceGrams = 10

    [Scale]
    WeightCacheDurationMs = 500
    ActivePollingIntervalMs = 1000
    AmplitudeSpikeThresholdKg = 5

    [Scanner]
    ScanCooldownSeconds = 2.0
    DebugMode = false

    [Assembly]
    SettleDelaySeconds = 1.5
    RetryDelaySeconds = 2.0
    BoxInitialStatus = default
    PlannerMode = spacious
"""

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from exceptions import ConfigurationError
from logger import get_logger
from models import ToleranceSettings

logger = get_logger(__name__)

TOLERANCE_TYPES = ('combined', 'percentage', 'absolute')
BOX_INITIAL_STATUSES = ('default', 'pending', 'awaiting_confirmation')
PLANNER_MODES = ('spacious', 'economical')


@dataclass(frozen=True)
class ScaleSettings:
    weight_cache_duration_ms: int = 500
    active_polling_interval_ms: int = 1000
    amplitude_spike_threshold_kg: float = 5.0
    spike_confirm_samples: int = 3
    weight_change_threshold_kg: float = 0.1

    @property
    def stale_after_seconds(self) -> float:
        return max(self.weight_cache_duration_ms, 2 * self.active_polling_interval_ms) / 1000.0


@dataclass(frozen=True)
class ScannerSettings:
    scan_cooldown_seconds: float = 2.0
    debug_mode: bool = False


@dataclass(frozen=True)
class AssemblySettings:
    settle_delay_seconds: float = 1.5
    retry_delay_seconds: float = 2.0
    box_initial_status: str = 'default'
    planner_mode: str = 'spacious'
    auto_advance_box: bool = True
    timer_pump_interval_ms: int = 100


@dataclass(frozen=True)
class PackingSettings:
    heavy_item_threshold_kg: float = 0.4
    max_box_weight_kg: float = 15.0


@dataclass(frozen=True)
class ExpansionSettings:
    max_depth: int = 10
    lookup_workers: int = 4
    fallback_weight_grams: float = 330.0
    category_one_weight_grams: float = 420.0
    default_weight_grams: float = 330.0


@dataclass(frozen=True)
class AssemblyConfig:
    tolerance: ToleranceSettings = field(default_factory=ToleranceSettings)
    scale: ScaleSettings = field(default_factory=ScaleSettings)
    scanner: ScannerSettings = field(default_factory=ScannerSettings)
    assembly: AssemblySettings = field(default_factory=AssemblySettings)
    packing: PackingSettings = field(default_factory=PackingSettings)
    expansion: ExpansionSettings = field(default_factory=ExpansionSettings)


class _SectionReader:
    """Typed option access that reports the offending option on parse errors."""

    def __init__(self, config: configparser.ConfigParser, section: str):
        self.config = config
        self.section = section

    def _read(self, option: str, fallback, convert: Callable):
        if not self.config.has_option(self.section, option):
            return fallback
        try:
            return convert(self.section, option)
        except ValueError as e:
            raw = self.config.get(self.section, option, raw=True)
            raise ConfigurationError(
                f"Invalid value for [{self.section}] {option}: {raw!r}",
                details={f"{self.section}.{option}": raw},
            ) from e

    def int(self, option: str, fallback: int) -> int:
        return self._read(option, fallback, self.config.getint)

    def float(self, option: str, fallback: float) -> float:
        return self._read(option, fallback, self.config.getfloat)

    def bool(self, option: str, fallback: bool) -> bool:
        return self._read(option, fallback, self.config.getboolean)

    def choice(self, option: str, fallback: str, allowed) -> str:
        value = self.config.get(self.section, option, fallback=fallback).strip().lower()
        if value not in allowed:
            raise ConfigurationError(
                f"Invalid value for [{self.section}] {option}: {value!r} "
                f"(expected one of {', '.join(allowed)})",
                details={f"{self.section}.{option}": value},
            )
        return value


def parse_config(config: configparser.ConfigParser) -> AssemblyConfig:
    """Build an AssemblyConfig from an already loaded ConfigParser."""
    defaults = AssemblyConfig()

    tol = _SectionReader(config, 'Tolerance')
    d = defaults.tolerance
    tolerance = ToleranceSettings(
        type=tol.choice('Type', d.type, TOLERANCE_TYPES),
        percentage=tol.float('Percentage', d.percentage),
        absolute=tol.float('AbsoluteGrams', d.absolute),
        max_tolerance=tol.float('MaxToleranceGrams', d.max_tolerance),
        min_tolerance=tol.float('MinToleranceGrams', d.min_tolerance),
        min_portions=tol.int('MinPortions', d.min_portions),
        max_portions=tol.int('MaxPortions', d.max_portions),
    )
    if tolerance.max_portions <= tolerance.min_portions:
        raise ConfigurationError(
            "[Tolerance] MaxPortions must be greater than MinPortions",
            details={'Tolerance.MaxPortions': str(tolerance.max_portions)},
        )

    sc = _SectionReader(config, 'Scale')
    d = defaults.scale
    scale = ScaleSettings(
        weight_cache_duration_ms=sc.int('WeightCacheDurationMs', d.weight_cache_duration_ms),
        active_polling_interval_ms=sc.int('ActivePollingIntervalMs', d.active_polling_interval_ms),
        amplitude_spike_threshold_kg=sc.float('AmplitudeSpikeThresholdKg', d.amplitude_spike_threshold_kg),
        spike_confirm_samples=sc.int('SpikeConfirmSamples', d.spike_confirm_samples),
        weight_change_threshold_kg=sc.float('WeightChangeThresholdKg', d.weight_change_threshold_kg),
    )

    sn = _SectionReader(config, 'Scanner')
    d = defaults.scanner
    scanner = ScannerSettings(
        scan_cooldown_seconds=sn.float('ScanCooldownSeconds', d.scan_cooldown_seconds),
        debug_mode=sn.bool('DebugMode', d.debug_mode),
    )

    asm = _SectionReader(config, 'Assembly')
    d = defaults.assembly
    assembly = AssemblySettings(
        settle_delay_seconds=asm.float('SettleDelaySeconds', d.settle_delay_seconds),
        retry_delay_seconds=asm.float('RetryDelaySeconds', d.retry_delay_seconds),
        box_initial_status=asm.choice('BoxInitialStatus', d.box_initial_status, BOX_INITIAL_STATUSES),
        planner_mode=asm.choice('PlannerMode', d.planner_mode, PLANNER_MODES),
        auto_advance_box=asm.bool('AutoAdvanceBox', d.auto_advance_box),
        timer_pump_interval_ms=asm.int('TimerPumpIntervalMs', d.timer_pump_interval_ms),
    )

    pk = _SectionReader(config, 'Packing')
    d = defaults.packing
    packing = PackingSettings(
        heavy_item_threshold_kg=pk.float('HeavyItemThresholdKg', d.heavy_item_threshold_kg),
        max_box_weight_kg=pk.float('MaxBoxWeightKg', d.max_box_weight_kg),
    )

    ex = _SectionReader(config, 'Expansion')
    d = defaults.expansion
    expansion = ExpansionSettings(
        max_depth=ex.int('MaxDepth', d.max_depth),
        lookup_workers=max(1, ex.int('LookupWorkers', d.lookup_workers)),
        fallback_weight_grams=ex.float('FallbackWeightGrams', d.fallback_weight_grams),
        category_one_weight_grams=ex.float('CategoryOneWeightGrams', d.category_one_weight_grams),
        default_weight_grams=ex.float('DefaultWeightGrams', d.default_weight_grams),
    )

    return AssemblyConfig(
        tolerance=tolerance,
        scale=scale,
        scanner=scanner,
        assembly=assembly,
        packing=packing,
        expansion=expansion,
    )


def load_config(config_path: Union[str, Path] = "config.ini") -> AssemblyConfig:
    """
    Load the engine configuration from config.ini.

    Args:
        config_path: Path to config.ini

    Returns:
        AssemblyConfig; all defaults when the file does not exist

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    config = configparser.ConfigParser()
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {path}, using defaults")
        return AssemblyConfig()

    try:
        config.read(path, encoding='utf-8')
    except configparser.Error as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        raise ConfigurationError(f"Could not parse {path}: {e}") from e

    assembly_config = parse_config(config)
    logger.info(f"Configuration loaded from {path}")
    logger.debug(f"Tolerance settings: {assembly_config.tolerance}")
    return assembly_config


def config_from_string(text: str, source: Optional[str] = None) -> AssemblyConfig:
    """Parse configuration from an INI string (used by tests and embedded setups)."""
    config = configparser.ConfigParser()
    try:
        config.read_string(text, source=source or '<string>')
    except configparser.Error as e:
        raise ConfigurationError(f"Could not parse configuration: {e}") from e
    return parse_config(config)
