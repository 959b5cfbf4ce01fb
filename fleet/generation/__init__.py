"""Scenario, fingerprint and proxy collaborators."""

from fleet.generation.fingerprint import FingerprintGenerator, fingerprint_script
from fleet.generation.proxy import ProxyAllocator
from fleet.generation.scenario import ScenarioGenerator, determine_page_type

__all__ = [
    "FingerprintGenerator",
    "ProxyAllocator",
    "ScenarioGenerator",
    "determine_page_type",
    "fingerprint_script",
]
