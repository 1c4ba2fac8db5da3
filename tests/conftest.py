"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from dell_disk_exporter import CommandError


RAID_OUTPUT = """
Disk.Virtual.1:RAID.Integrated.1-1
   Layout                           = Raid-10
   Status                           = Ok
   RemainingRedundancy              = 1
   Size                             = 1787.50 GB
Disk.Virtual.0:RAID.Integrated.1-0
   Layout                           = Raid-1
   Status                           = Ok
   RemainingRedundancy              = 1
   Size                             = 372.00 GB
"""

SMART_LOG_JSON = """{
  "critical_warning" : 0,
  "temperature" : 301,
  "avail_spare" : 100,
  "spare_thresh" : 5,
  "percent_used" : 15,
  "data_units_read" : 499296134,
  "data_units_written" : 1474968593,
  "host_read_commands" : 9347931143,
  "host_write_commands" : 51493840602,
  "controller_busy_time" : 1974546,
  "power_cycles" : 290,
  "power_on_hours" : 38313,
  "unsafe_shutdowns" : 139,
  "media_errors" : 0,
  "num_err_log_entries" : 17,
  "warning_temp_time" : 0,
  "critical_comp_time" : 0,
  "temperature_sensor_1" : 306,
  "temperature_sensor_2" : 301,
  "temperature_sensor_3" : 296,
  "temperature_sensor_4" : 295,
  "thm_temp1_trans_count" : 0,
  "thm_temp2_trans_count" : 0,
  "thm_temp1_total_time" : 0,
  "thm_temp2_total_time" : 0
}"""

SMART_LOG_TEXT = """Smart Log for NVME device:nvme0n1 namespace-id:ffffffff
critical_warning                        : 0
temperature                             : 28 C (301 Kelvin)
available_spare                         : 100%
percentage_used                         : 15%
data_units_read                         : 499296134
power_cycles                            : 290
Warning Temperature Time                : 1234
Critical Composite Temperature Time     : 250
Temperature Sensor 1                    : 33 C (306 Kelvin)
"""

LSBLK_OUTPUT = """sda     disk
nvme0n1 disk
nvme1n1 disk
sr0     rom
"""


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeExecutor:
    """Command executor double keyed by program name.

    A response may be bytes, str, an exception instance, or a callable
    taking the argument tuple.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def execute(self, program, *args):
        self.calls.append((program,) + args)
        response = self.responses.get(program)
        if callable(response):
            response = response(args)
        if response is None:
            raise CommandError(program, "not found")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            response = response.encode()
        return response


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def raid_output():
    return RAID_OUTPUT


@pytest.fixture
def smart_log_json():
    return SMART_LOG_JSON


@pytest.fixture
def smart_log_text():
    return SMART_LOG_TEXT


@pytest.fixture
def lsblk_output():
    return LSBLK_OUTPUT


@pytest.fixture
def make_executor():
    return FakeExecutor
