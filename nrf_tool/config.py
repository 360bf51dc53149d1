from pathlib import Path

LOG_DIR = Path(__file__).parent / "logs"
LOG_FILE = LOG_DIR / "session.jsonl"
APP_NAME = "nRF CLI"

# Образ для демо-режима (симулятор вместо реального устройства)
SIM_STORE = Path("logs/sim_nrf.bin")

# ---- USB ----
VENDOR_NORDIC = 0x1915
PID_NRF24LU = 0x0101
PID_NRFGO = 0x001A

EP_IN = 0x81
EP_OUT_NRF24LU = 0x01
EP_OUT_NRFGO = 0x02

USB_CONFIGURATION = 1
USB_INTERFACE = 0

TIMEOUT_MS = 2000       # на каждую bulk-передачу
READY_RETRIES = 100     # nRFgo: сколько раз опрашивать READY
