"""
signal-trader Runner: Engine Context

Every collaborator an activity needs, built once from validated config and
passed explicitly to the activities.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.audit_log import AuditLogger
from core.broker_alpaca import AlpacaBroker
from core.housekeeping import HousekeepingPolicy, HousekeepingTasks
from core.market_data import AltHoursPriceFile, AlpacaMarketData, FmpPriceClient, MarketDataService
from core.order_gateway import OrderGateway
from core.position_manager import PositionRiskManager, RiskPolicy
from core.price_extremes import PriceExtremesLog
from core.score_feed import ScoreIngestor
from core.trade_sizing import SizingPolicy, TradeSizer
from infra.metrics import MetricsRecorder
from infra.retry import RetryPolicy
from infra.state_store import CursorStore, JsonDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    mode: str
    broker: AlpacaBroker
    market_data: MarketDataService
    gateway: OrderGateway
    sizer: TradeSizer
    risk_manager: PositionRiskManager
    housekeeping: HousekeepingTasks
    ingestor: ScoreIngestor
    audit: AuditLogger
    metrics: MetricsRecorder
    schedule: Dict[str, float]
    watch_interval_seconds: float
    signals_path: str


def build_context(app_cfg: Dict[str, Any], policy_cfg: Dict[str, Any],
                  mode: Optional[str] = None) -> EngineContext:
    """
    Wire the engine from the validated ``app.yaml`` and ``policy.yaml`` documents.

    Args:
        app_cfg: Parsed app.yaml (schema defaults filled in)
        policy_cfg: Parsed policy.yaml (schema defaults filled in)
        mode: Overrides ``app.mode`` when given
    """
    mode = (mode or app_cfg.get("app", {}).get("mode", "DRY_RUN")).upper()
    broker_cfg = app_cfg.get("broker", {})
    files = app_cfg.get("files", {})
    monitoring = app_cfg.get("monitoring", {})
    timeout = float(broker_cfg.get("timeout_seconds", 20.0))
    retry_policy = RetryPolicy.from_config(app_cfg.get("retry"))

    metrics = MetricsRecorder(
        enabled=bool(monitoring.get("metrics_enabled", False)),
        port=int(monitoring.get("metrics_port", 9100)),
    )

    paper = mode != "LIVE"
    base_url = broker_cfg.get("paper_base_url") if paper else broker_cfg.get("live_base_url")
    broker = AlpacaBroker(paper=paper, base_url=base_url, timeout=timeout, retry_policy=retry_policy)

    market_data = MarketDataService(
        alpaca=AlpacaMarketData(
            base_url=broker_cfg.get("data_base_url", "https://data.alpaca.markets"),
            timeout=timeout,
            retry_policy=retry_policy,
        ),
        alt_prices=FmpPriceClient(
            base_url=broker_cfg.get("alt_price_base_url", "https://financialmodelingprep.com"),
            timeout=timeout,
            retry_policy=retry_policy,
        ),
        alt_hours_file=AltHoursPriceFile(files.get("alt_hours_prices", "data/alt_hours_prices.txt")),
    )

    gateway = OrderGateway(broker, mode=mode, metrics=metrics)
    extremes_store = JsonDocumentStore(files.get("extremes", "data/price_extremes.json"), default={})

    sizer = TradeSizer(broker, market_data, gateway, SizingPolicy.from_config(policy_cfg.get("sizing")))
    risk_manager = PositionRiskManager(
        broker, market_data, gateway,
        PriceExtremesLog(extremes_store),
        policy=RiskPolicy.from_config(policy_cfg.get("risk")),
        metrics=metrics,
    )
    # Read-only view; the risk cycle is the only writer of the extremes file
    housekeeping = HousekeepingTasks(
        broker, market_data, gateway,
        PriceExtremesLog(extremes_store),
        policy=HousekeepingPolicy.from_config(policy_cfg.get("housekeeping"), policy_cfg.get("risk")),
    )

    ingestion = policy_cfg.get("ingestion", {})
    signals_path = files.get("signals", "data/scores.txt")
    ingestor = ScoreIngestor(
        signals_path,
        CursorStore(files.get("cursor", "data/last_processed_id.txt")),
        apply=sizer.execute,
        policy=ingestion.get("policy", "attempt_once"),
        metrics=metrics,
    )

    audit = AuditLogger(app_cfg.get("logging", {}).get("audit_file"), mode=mode)

    logger.info(f"Engine context built: mode={mode}, broker={broker.base_url}, signals={signals_path}")
    return EngineContext(
        mode=mode,
        broker=broker,
        market_data=market_data,
        gateway=gateway,
        sizer=sizer,
        risk_manager=risk_manager,
        housekeeping=housekeeping,
        ingestor=ingestor,
        audit=audit,
        metrics=metrics,
        schedule=dict(policy_cfg.get("schedule", {})),
        watch_interval_seconds=float(ingestion.get("watch_interval_seconds", 0.25)),
        signals_path=signals_path,
    )
