from __future__ import annotations
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator


class Backend(str, Enum):
    IFTOP = "iftop"
    BPFTRACE = "bpftrace"


class MonitorConfig(BaseModel):
    backend: Backend = Backend.IFTOP
    iface: Optional[str] = Field(None, description="Interface to watch, required by iftop")
    duration: int = Field(30, ge=0, description="Seconds to monitor, 0 runs forever")
    sample_interval: int = Field(2, ge=1, description="Seconds per sampling cycle")
    prometheus_port: Optional[int] = Field(None, ge=1, le=65535)
    host: str = "0.0.0.0"
    geoip_db: Optional[str] = None
    prometheus_export_threshold: int = Field(1024 * 1024, ge=0, description="Bytes; lower totals are not exported")
    bpftrace_script: Optional[str] = None
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _iface_required_for_iftop(self) -> "MonitorConfig":
        if self.backend == Backend.IFTOP and not self.iface:
            raise ValueError("the iftop backend needs an interface (--iface)")
        return self


class GeoInfoModel(BaseModel):
    country: str
    province: str
    city: str
    isp: str


class IpTraffic(BaseModel):
    ip: str
    tx_bytes: int
    rx_bytes: int
    tx_packets: int
    rx_packets: int
    total_bytes: int
    geo: GeoInfoModel


class TrafficList(BaseModel):
    items: List[IpTraffic]
    total: int


class HealthStatus(BaseModel):
    backend: str
    cycles: int
    tracked_ips: int
