#!/usr/bin/env python3
"""
Dell Disk Exporter for Prometheus
Version: 1.0.0
Polls iDRAC virtual disk status (racadm) and NVMe SMART logs (nvme-cli)
and keeps the exported series stable across transient tool failures
"""

import subprocess
import re
import time
import socket
import os
import json
import shutil
import threading
import signal
import sys
from typing import Dict, List, Optional, Any
from prometheus_client import start_http_server, Gauge, Info, Counter, Histogram
from prometheus_client.core import CollectorRegistry
import logging

__version__ = '1.0.0'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
EXPORTER_PORT = int(os.environ.get('EXPORTER_PORT', 8000))
COLLECTION_INTERVAL = int(os.environ.get('COLLECTION_INTERVAL', 30))
# Shared by the RAID and NVMe reconcilers
GRACE_PERIOD = int(os.environ.get('NVME_GRACE_PERIOD', 300))
COMMAND_TIMEOUT = int(os.environ.get('COMMAND_TIMEOUT', 60))
RACADM_PATH = os.environ.get('RACADM_PATH', 'racadm')
LSBLK_PATH = os.environ.get('LSBLK_PATH', 'lsblk')
NVME_PATH = os.environ.get('NVME_PATH', 'nvme')
DEBUG_MODE = os.environ.get('DEBUG_MODE', '').lower() in ('true', '1', 'yes')

if DEBUG_MODE:
    logger.setLevel(logging.DEBUG)

RAID_PROPERTIES = 'layout,status,RemainingRedundancy,Size'
VIRTUAL_DISK_MARKER = 'Disk.Virtual'

# Bare temperature readings at or above this are reported in Kelvin
KELVIN_THRESHOLD = 200.0

# '28 C (301 Kelvin)', '28 °C (301 K)' and the nvme-cli 1.x form '35 C'
_TEMPERATURE_PATTERN = re.compile(r'^(\d+)\s*°?C(?:\s*\(\d+\s*K(?:elvin)?\))?$')
_NUMBER_PATTERN = re.compile(r'\d+(?:\.\d+)?')


class CommandError(Exception):
    """An external tool could not be run, timed out or exited nonzero"""
    def __init__(self, program, reason, returncode=None, output=b''):
        super().__init__(f"{program}: {reason}")
        self.program = program
        self.reason = reason
        self.returncode = returncode
        self.output = output or b''


class CommandExecutor:
    """Runs diagnostic tools and returns their combined stdout and stderr"""
    def __init__(self, timeout=COMMAND_TIMEOUT):
        self.timeout = timeout

    def execute(self, program, *args):
        """Run program with args, raising CommandError on any failure"""
        cmd = [program, *args]
        logger.debug(f"Executing {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                    timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise CommandError(program, f"timed out after {self.timeout}s", output=e.output) from e
        except OSError as e:
            raise CommandError(program, str(e)) from e

        if result.returncode != 0:
            raise CommandError(program, f"exit status {result.returncode}",
                               returncode=result.returncode, output=result.stdout)
        return result.stdout


def parse_raid_status(output: str) -> Dict[str, Dict[str, str]]:
    """
    Parse `racadm raid get vdisks -o -p ...` output.

    Every `Disk.Virtual.N:<id>` line opens a record keyed by <id>; the
    `Key = Value` lines below it fill that record. Anything before the
    first marker is ignored.
    """
    statuses = {}
    current_vdisk = None

    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith(VIRTUAL_DISK_MARKER):
            _, sep, vdisk = stripped.partition(':')
            vdisk = vdisk.strip()
            current_vdisk = vdisk if sep and vdisk else None
            if current_vdisk is not None:
                statuses.setdefault(current_vdisk, {})
        elif current_vdisk is not None and '=' in line:
            key, _, value = line.partition('=')
            statuses[current_vdisk][key.strip()] = value.strip()

    return statuses


def raid_status_value(attributes):
    return 1.0 if attributes.get('Status') == 'Ok' else 0.0


def raid_layout_value(attributes):
    # Presence only: the RAID level itself is not encoded
    return 1.0 if attributes.get('Layout') else 0.0


def parse_redundancy(value):
    """Parse RemainingRedundancy, defaulting to 0"""
    try:
        return float(value.split()[0])
    except (AttributeError, IndexError, ValueError):
        return 0.0


def parse_size(value):
    """Parse the numeric part of a size like '1787.50 GB', defaulting to 0"""
    match = _NUMBER_PATTERN.search(value or '')
    if match:
        return float(match.group())
    return 0.0


def parse_nvme_devices(output: str) -> List[str]:
    """Extract NVMe disk names from `lsblk -d -n -o NAME,TYPE` output"""
    drives = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == 'disk' and parts[0].startswith('nvme'):
            drives.append(parts[0])
    return drives


def parse_smart_log(output: str) -> Dict[str, Any]:
    """Parse `nvme smart-log` output, preferring JSON over the text format"""
    try:
        smart_log = json.loads(output)
    except ValueError:
        smart_log = None

    if isinstance(smart_log, dict):
        return smart_log
    return _parse_smart_log_text(output)


def _parse_smart_log_text(output):
    smart_log = {}
    for line in output.splitlines():
        if ':' not in line:
            continue
        key, _, value = line.partition(':')
        key = key.strip()
        if key:
            smart_log[key] = value.strip()
    return smart_log


def convert_temperature(value: str) -> Optional[float]:
    """
    Convert a SMART temperature string to Celsius.

    Handles the nvme-cli text forms '28 C (301 Kelvin)' and '35 C', and
    bare numbers, which are treated as Kelvin when they are too large to
    be Celsius. Returns None when the value cannot be parsed.
    """
    match = _TEMPERATURE_PATTERN.match(value.strip())
    if match:
        return float(match.group(1))

    try:
        temp = float(value.strip())
    except ValueError:
        return None
    if temp >= KELVIN_THRESHOLD:
        return temp - 273.15
    return temp


def is_temperature_key(key):
    """
    True for SMART keys holding a temperature reading.

    Case-sensitive: mixed-case text keys like 'Temperature Sensor 1' and
    'Warning Temperature Time' take the plain numeric path. Time and
    count counters such as 'warning_temp_time' are never temperatures.
    """
    if 'temp' not in key:
        return False
    return not key.lower().endswith(('time', 'count'))


def normalize_smart_value(key, value) -> Optional[float]:
    """Turn a SMART log entry into a gauge value, or None to skip it"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    if is_temperature_key(key):
        return convert_temperature(value)

    tokens = value.split()
    if not tokens:
        return None
    try:
        return float(tokens[0])
    except ValueError:
        return None


class PresenceTracker:
    """Last-seen timestamps for the entities of one subsystem"""
    def __init__(self, grace_period, clock=time.monotonic):
        self.grace_period = grace_period
        self.clock = clock
        self.last_seen = {}

    def __contains__(self, entity):
        return entity in self.last_seen

    def update(self, present):
        """
        Record the entities seen in this poll.

        Returns (absent, expired): entities missing but still within the
        grace period, and entities whose absence exceeded it. Expired
        entities are forgotten, so a later sighting starts from scratch.
        """
        now = self.clock()
        present = set(present)
        for entity in present:
            self.last_seen[entity] = now

        absent = []
        expired = []
        for entity, seen in sorted(self.last_seen.items()):
            if entity in present:
                continue
            if now - seen > self.grace_period:
                expired.append(entity)
            else:
                absent.append(entity)

        for entity in expired:
            del self.last_seen[entity]
        return absent, expired


class RaidReconciler:
    """Keeps the raid_* gauge families in line with the latest racadm snapshot"""
    def __init__(self, registry, grace_period=GRACE_PERIOD, clock=time.monotonic):
        self.registry = registry
        self.presence = PresenceTracker(grace_period, clock)

        self.raid_status = Gauge('raid_status', 'Status of the RAID controller',
                                 ['vdisk'], registry=registry)
        self.raid_redundancy = Gauge('raid_redundancy', 'Remaining redundancy of the RAID controller',
                                     ['vdisk'], registry=registry)
        self.raid_size = Gauge('raid_size', 'Size of the RAID controller',
                               ['vdisk'], registry=registry)
        self.raid_layout = Gauge('raid_layout', 'Layout of the RAID controller',
                                 ['vdisk'], registry=registry)

    def _families(self):
        return (self.raid_status, self.raid_redundancy, self.raid_size, self.raid_layout)

    def reconcile(self, statuses):
        """Apply a complete {vdisk: attributes} snapshot"""
        for vdisk, attributes in statuses.items():
            logger.debug(f"RAID status for {vdisk}: {attributes}")
            self.raid_status.labels(vdisk=vdisk).set(raid_status_value(attributes))
            self.raid_redundancy.labels(vdisk=vdisk).set(parse_redundancy(attributes.get('RemainingRedundancy')))
            self.raid_size.labels(vdisk=vdisk).set(parse_size(attributes.get('Size')))
            self.raid_layout.labels(vdisk=vdisk).set(raid_layout_value(attributes))

        absent, expired = self.presence.update(statuses)
        for vdisk in absent:
            logger.warning(f"Virtual disk {vdisk} missing from racadm output, keeping last values")
        for vdisk in expired:
            logger.info(f"Virtual disk {vdisk} gone for over {self.presence.grace_period}s, removing its series")
            for family in self._families():
                family.remove(vdisk)


class NvmeReconciler:
    """Keeps the nvme_* gauge families in line with the visible NVMe drives"""
    def __init__(self, registry, grace_period=GRACE_PERIOD, clock=time.monotonic):
        self.registry = registry
        self.presence = PresenceTracker(grace_period, clock)
        # device -> SMART log keys exported for it
        self.smart_keys = {}
        self.health_devices = set()

        self.nvme_presence = Gauge('nvme_presence', 'Presence of NVMe device',
                                   ['device'], registry=registry)
        self.nvme_health = Gauge('nvme_health', 'Health of NVMe device (1 = no critical warning)',
                                 ['device'], registry=registry)
        self.nvme_smart_log = Gauge('nvme_smart_log', 'SMART log metrics for NVMe devices',
                                    ['device', 'metric'], registry=registry)

    def reconcile(self, smart_logs):
        """
        Apply a complete {device: smart_log} snapshot.

        A device mapped to None is present but its SMART log could not be
        read this cycle; its SMART series keep their previous values.
        """
        for device, smart_log in smart_logs.items():
            self.nvme_presence.labels(device=device).set(1)
            if smart_log is not None:
                self._update_smart_log(device, smart_log)

        absent, expired = self.presence.update(smart_logs)
        for device in absent:
            logger.warning(f"NVMe device {device} not detected, marking absent")
            self.nvme_presence.labels(device=device).set(0)
        for device in expired:
            logger.info(f"NVMe device {device} gone for over {self.presence.grace_period}s, removing its series")
            self._remove_device(device)

    def _update_smart_log(self, device, smart_log):
        keys = self.smart_keys.setdefault(device, set())
        for key, value in smart_log.items():
            number = normalize_smart_value(key, value)
            if number is None:
                logger.debug(f"Skipping non-numeric SMART entry {key}={value!r} for {device}")
                continue
            self.nvme_smart_log.labels(device=device, metric=key).set(number)
            keys.add(key)

        if 'critical_warning' in smart_log:
            warning = normalize_smart_value('critical_warning', smart_log['critical_warning'])
            if warning is not None:
                self.nvme_health.labels(device=device).set(1 if warning == 0 else 0)
                self.health_devices.add(device)

    def _remove_device(self, device):
        self.nvme_presence.remove(device)
        if device in self.health_devices:
            self.nvme_health.remove(device)
            self.health_devices.discard(device)
        for key in sorted(self.smart_keys.pop(device, ())):
            self.nvme_smart_log.remove(device, key)


class RaidCollector:
    """Collects virtual disk status from the iDRAC with racadm"""
    name = 'raid'

    def __init__(self, executor, reconciler, racadm_path=RACADM_PATH):
        self.executor = executor
        self.reconciler = reconciler
        self.racadm_path = racadm_path

    def get_raid_status(self):
        output = self.executor.execute(self.racadm_path, 'raid', 'get', 'vdisks',
                                       '-o', '-p', RAID_PROPERTIES)
        statuses = parse_raid_status(output.decode('utf-8', errors='replace'))
        logger.debug(f"Parsed {len(statuses)} virtual disks from racadm output")
        return statuses

    def collect(self):
        self.reconciler.reconcile(self.get_raid_status())


class NvmeCollector:
    """
    Collects NVMe SMART logs with nvme-cli.

    Drive discovery is injectable through list_devices; it defaults to
    parsing lsblk output.
    """
    name = 'nvme'

    def __init__(self, executor, reconciler, list_devices=None, stats=None,
                 lsblk_path=LSBLK_PATH, nvme_path=NVME_PATH):
        self.executor = executor
        self.reconciler = reconciler
        self.list_devices = list_devices or self.detect_nvme_drives
        self.stats = stats
        self.lsblk_path = lsblk_path
        self.nvme_path = nvme_path

    def detect_nvme_drives(self):
        output = self.executor.execute(self.lsblk_path, '-d', '-n', '-o', 'NAME,TYPE')
        return parse_nvme_devices(output.decode('utf-8', errors='replace'))

    def get_smart_log(self, device):
        output = self.executor.execute(self.nvme_path, 'smart-log', f'/dev/{device}',
                                       '--output-format', 'json')
        return parse_smart_log(output.decode('utf-8', errors='replace'))

    def collect(self):
        devices = self.list_devices()
        logger.debug(f"Detected NVMe drives: {devices}")

        smart_logs = {}
        for device in devices:
            try:
                smart_logs[device] = self.get_smart_log(device)
            except CommandError as e:
                logger.warning(f"Error getting SMART log for {device}: {e}")
                if self.stats is not None:
                    self.stats.collection_errors.labels(collector='nvme_smart').inc()
                smart_logs[device] = None

        self.reconciler.reconcile(smart_logs)


class ExporterStats:
    """Exporter self-monitoring metrics"""
    def __init__(self, registry):
        self.collection_errors = Counter('disk_exporter_collection_errors_total', 'Collection errors',
                                         ['collector'], registry=registry)
        self.collection_duration = Histogram('disk_exporter_collection_duration_seconds', 'Collection duration',
                                             ['collector'], registry=registry)
        self.collection_success = Gauge('disk_exporter_collection_success', 'Collection success',
                                        ['collector'], registry=registry)
        self.feature_enabled = Gauge('disk_exporter_feature_enabled', 'Feature detection status',
                                     ['feature'], registry=registry)
        self.exporter_info = Info('disk_exporter', 'Exporter information', registry=registry)


class Poller(threading.Thread):
    """Runs one collector every interval seconds until stopped"""
    def __init__(self, collector, interval, stats):
        super().__init__(name=f'{collector.name}-poller', daemon=True)
        self.collector = collector
        self.interval = interval
        self.stats = stats
        self._stop_event = threading.Event()

    def poll_once(self):
        """
        Run one collection cycle. A failed cycle is logged and counted;
        the collector's exported series are left as they were.
        """
        name = self.collector.name
        try:
            with self.stats.collection_duration.labels(collector=name).time():
                self.collector.collect()
        except CommandError as e:
            logger.error(f"Error collecting {name} metrics: {e}")
            if e.output:
                logger.debug(f"Command output: {e.output.decode('utf-8', errors='replace')}")
        except Exception:
            logger.exception(f"Unexpected error collecting {name} metrics")
        else:
            self.stats.collection_success.labels(collector=name).set(1)
            return True

        self.stats.collection_errors.labels(collector=name).inc()
        self.stats.collection_success.labels(collector=name).set(0)
        return False

    def run(self):
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.interval)

    def stop(self):
        self._stop_event.set()


class DellDiskExporter:
    def __init__(self, registry=None, executor=None, interval=COLLECTION_INTERVAL,
                 grace_period=GRACE_PERIOD, features=None, list_devices=None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.hostname = socket.gethostname()
        self.executor = executor or CommandExecutor()
        self.interval = interval
        self._shutdown = threading.Event()

        self.features = {
            'raid': False,
            'nvme': False,
        }
        if features is None:
            self._detect_features()
        else:
            self.features.update(features)

        self.stats = ExporterStats(self.registry)
        self.stats.exporter_info.info({'version': __version__, 'hostname': self.hostname})
        for feature, enabled in self.features.items():
            self.stats.feature_enabled.labels(feature=feature).set(1 if enabled else 0)

        self.collectors = []
        if self.features['raid']:
            self.collectors.append(RaidCollector(
                self.executor, RaidReconciler(self.registry, grace_period)))
        if self.features['nvme']:
            self.collectors.append(NvmeCollector(
                self.executor, NvmeReconciler(self.registry, grace_period),
                list_devices=list_devices, stats=self.stats))

        self.pollers = [Poller(c, self.interval, self.stats) for c in self.collectors]

        logger.info(f"Disk exporter initialized with features: {self.active_features()}")

    def active_features(self):
        return [k for k, v in self.features.items() if v]

    def _detect_features(self):
        """Detect which diagnostic tools are installed"""
        logger.info("Detecting available diagnostic tools...")
        for feature, detect_func in (('raid', self._detect_raid), ('nvme', self._detect_nvme)):
            if detect_func():
                self.features[feature] = True
                logger.info(f"✓ {feature.upper()} tooling detected")
            else:
                logger.info(f"✗ {feature.upper()} tooling not found, skipping")

    def _detect_raid(self):
        return shutil.which(RACADM_PATH) is not None

    def _detect_nvme(self):
        return shutil.which(LSBLK_PATH) is not None and shutil.which(NVME_PATH) is not None

    def collect_all_metrics(self):
        """Run one cycle of every collector in the calling thread"""
        for poller in self.pollers:
            poller.poll_once()

    def start(self):
        for poller in self.pollers:
            poller.start()

    def shutdown(self):
        """Clean shutdown"""
        logger.info("Shutting down exporter...")
        self._shutdown.set()
        for poller in self.pollers:
            poller.stop()
        # Waits out at most one in-flight command per poller
        timeout = getattr(self.executor, 'timeout', COMMAND_TIMEOUT)
        for poller in self.pollers:
            if poller.is_alive():
                poller.join(timeout=timeout)

    def run(self):
        """Main loop"""
        start_http_server(EXPORTER_PORT, registry=self.registry)
        logger.info(f"Disk exporter started on port {EXPORTER_PORT}")
        logger.info(f"Metrics available at http://0.0.0.0:{EXPORTER_PORT}/metrics")

        if not self.pollers:
            logger.warning("Neither racadm nor nvme-cli found; only exporter metrics will be served")

        self.start()
        try:
            while not self._shutdown.wait(1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.shutdown()


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}")
    sys.exit(0)


def main():
    """Main entry point"""
    try:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        # racadm and nvme smart-log both need root
        if os.geteuid() != 0:
            logger.warning("Not running as root. racadm and nvme-cli will likely fail.")

        exporter = DellDiskExporter()
        exporter.run()

    except KeyboardInterrupt:
        logger.info("Exporter stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise


if __name__ == '__main__':
    main()
