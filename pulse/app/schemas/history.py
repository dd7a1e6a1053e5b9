from pydantic import BaseModel, Field


class GuestRates(BaseModel):
    """Bytes per second between the last two metrics cycles; ``None`` after a counter reset."""

    disk_read_rate: float | None = None
    disk_write_rate: float | None = None
    net_in_rate: float | None = None
    net_out_rate: float | None = None


class HistorySample(BaseModel):
    timestamp: float
    cpu: float = 0.0
    mem: float = 0.0
    maxmem: float | None = None
    disk: float = 0.0
    maxdisk: float | None = None
    diskread: float = 0.0
    diskwrite: float = 0.0
    netin: float = 0.0
    netout: float = 0.0
    guest_mem_actual_used: int | None = None
    guest_mem_total: int | None = None
    rates: GuestRates | None = None


class ChartPoint(BaseModel):
    timestamp: float
    value: float


class GuestChartSeries(BaseModel):
    cpu: list[ChartPoint] = Field(default_factory=list)
    memory: list[ChartPoint] = Field(default_factory=list)
    disk: list[ChartPoint] = Field(default_factory=list)
    diskread: list[ChartPoint] = Field(default_factory=list)
    diskwrite: list[ChartPoint] = Field(default_factory=list)
    netin: list[ChartPoint] = Field(default_factory=list)
    netout: list[ChartPoint] = Field(default_factory=list)


class HistoryStats(BaseModel):
    total_guests: int = 0
    total_data_points: int = 0


class ChartData(BaseModel):
    data: dict[str, GuestChartSeries] = Field(default_factory=dict)
    stats: HistoryStats = Field(default_factory=HistoryStats)
    timestamp: float
