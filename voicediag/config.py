from __future__ import annotations
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
import json

APP_DIR = Path.home() / ".voicediag"
CFG_PATH = APP_DIR / "config.json"
LOG_PATH = APP_DIR / "voicediag.log"


def _default_endpoints() -> List[Dict[str, object]]:
    return [
        {"name": "Voice relay EU-1", "host": "188.42.147.1", "port": 443},
        {"name": "Voice relay EU-2", "host": "188.42.95.1", "port": 443},
        {"name": "Voice media",      "host": "85.236.96.1", "port": 443},
    ]


@dataclass
class AppConfig:
    # Trigger
    target_process: str = "VoiceClient.exe"
    event_channel: str = "Microsoft-Windows-Audio/Operational"
    event_marker: str = "vivox"
    process_poll_interval: float = 1.0
    event_poll_interval: float = 0.5

    # Endpoint probes
    endpoints: List[Dict[str, object]] = field(default_factory=_default_endpoints)
    ping_timeout_ms: int = 1000
    tcp_timeout_s: float = 3.0

    # DNS
    dns_test_domains: List[str] = field(default_factory=lambda: [
        "vivox.com", "www.vivox.com", "unity.com",
    ])
    dns_cache_pattern: str = "vivox"
    dns_max_retries: int = 2
    dns_route_probe: str = "8.8.8.8"
    # Ordered: first entry is tried first.
    dns_fallbacks: Dict[str, List[str]] = field(default_factory=lambda: {
        "Cloudflare": ["1.1.1.1", "1.0.0.1"],
        "Google":     ["8.8.8.8", "8.8.4.4"],
    })

    # Firewall log monitor
    watched_ip_patterns: List[str] = field(default_factory=lambda: [
        "188.42.147.*", "188.42.95.*", "85.236.*",
    ])
    firewall_log_max_kb: int = 4096
    firewall_restore_previous_logging: bool = True
    firewall_tail_interval: float = 0.2

    # Remediation
    remediation_enabled: bool = True
    remediation_blocks: List[str] = field(default_factory=lambda: [
        "188.42.147.0/24", "188.42.95.0/24", "85.236.0.0/16",
    ])
    remediation_tcp_port: str = "443"
    remediation_udp_ports: str = "12000-65535"
    remediation_rule_prefix: str = "VoiceDiag"

    # Time sync
    time_server: str = "time.windows.com"
    time_offset_threshold_s: float = 2.0
    time_max_retries: int = 2

    log_path: str = str(LOG_PATH)

def ensure_dirs(path: Optional[Path] = None) -> None:
    (path.parent if path else APP_DIR).mkdir(parents=True, exist_ok=True)

def load_config(path: Optional[Path] = None) -> AppConfig:
    path = Path(path) if path else CFG_PATH
    ensure_dirs(path)
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        return AppConfig(**known)
    except Exception:
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg

def save_config(cfg: AppConfig, path: Optional[Path] = None) -> None:
    path = Path(path) if path else CFG_PATH
    ensure_dirs(path)
    path.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
