from __future__ import annotations
import os

WORKSPACE_ROOT = os.environ.get("RELAYCI_WORKSPACE_ROOT", ".relayci/work")
CONTAINER_SLOTS = int(os.environ.get("RELAYCI_CONTAINER_SLOTS", "4"))
MACHINE_SLOTS = int(os.environ.get("RELAYCI_MACHINE_SLOTS", "2"))
ALLOCATION_TIMEOUT = float(os.environ.get("RELAYCI_ALLOCATION_TIMEOUT", "600"))
DOCKER_BIN = os.environ.get("RELAYCI_DOCKER_BIN", "docker")
REPORT_URL = os.environ.get("RELAYCI_REPORT_URL")
REPORT_TOKEN = os.environ.get("RELAYCI_REPORT_TOKEN")

DEFINITION_FILES = ("relayci.yml", "relayci.yaml", ".relayci/config.yml")
