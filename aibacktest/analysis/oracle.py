"""
Decision oracle contract and decoding.

The oracle is an external, untrusted service.  Whatever it returns is
decoded here through pydantic models before anything reaches the order
engine:

- a payload without a recognisable ``decision`` is a failed analysis
  and raises `AnalysisError`;
- a ``TRADE`` decision whose trade parameters are missing or invalid is
  downgraded to ``NO_TRADE`` and the reason is kept in `reasoning`.

Keys are accepted in snake_case or camelCase.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import AnalysisError
from ..execution.models import Side
from .context import AnalysisContext

logger = logging.getLogger(__name__)


class DecisionKind(str, Enum):
    TRADE = "TRADE"
    NO_TRADE = "NO_TRADE"


class DecisionOracle(Protocol):
    def decide(self, context: AnalysisContext) -> Mapping[str, Any]:
        ...


class TradeParamsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    side: Side = Field(validation_alias=AliasChoices("side", "type", "direction"))
    entry_price: float = Field(
        gt=0, allow_inf_nan=False, strict=True,
        validation_alias=AliasChoices("entry_price", "entryPrice"),
    )
    stop_loss: float = Field(
        gt=0, allow_inf_nan=False, strict=True,
        validation_alias=AliasChoices("stop_loss", "stopLoss"),
    )
    take_profit: float = Field(
        gt=0, allow_inf_nan=False, strict=True,
        validation_alias=AliasChoices("take_profit", "takeProfit"),
    )
    lot_size: Optional[float] = Field(
        default=None, gt=0, allow_inf_nan=False, strict=True,
        validation_alias=AliasChoices("lot_size", "lotSize"),
    )

    @field_validator("side", mode="before")
    @classmethod
    def _upper_side(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class DecisionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    decision: DecisionKind
    trade_params: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("trade_params", "tradeParams", "trade_details", "tradeDetails"),
    )
    confidence: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    reasoning: str = ""
    analysis_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("analysis_id", "analysisId"),
    )

    @field_validator("decision", mode="before")
    @classmethod
    def _normalise_decision(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper().replace("-", "_").replace(" ", "_")
        return value

    @field_validator("reasoning", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


@dataclass(frozen=True)
class TradeParams:
    side: Side
    entry_price: float
    stop_loss: float
    take_profit: float
    lot_size: Optional[float] = None


@dataclass
class Decision:
    analysis_id: str
    kind: DecisionKind
    trade_params: Optional[TradeParams] = None
    confidence: float = 0.0
    reasoning: str = ""
    degraded: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_trade(self) -> bool:
        return self.kind is DecisionKind.TRADE and self.trade_params is not None

    def to_dict(self) -> Dict[str, Any]:
        params = None
        if self.trade_params is not None:
            p = self.trade_params
            params = {
                'side': p.side.value,
                'entry_price': p.entry_price,
                'stop_loss': p.stop_loss,
                'take_profit': p.take_profit,
                'lot_size': p.lot_size,
            }
        return {
            'analysis_id': self.analysis_id,
            'decision': self.kind.value,
            'trade_params': params,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'degraded': self.degraded,
            'raw': self.raw,
        }


def _short_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in exc.errors()
    )


def decode_decision(payload: Any, fallback_analysis_id: str) -> Decision:
    """Validate an oracle payload and turn it into a `Decision`."""
    if not isinstance(payload, Mapping):
        raise AnalysisError(f"Oracle returned {type(payload).__name__}, expected a mapping")
    try:
        parsed = DecisionPayload.model_validate(dict(payload))
    except ValidationError as exc:
        raise AnalysisError(f"Unreadable oracle decision: {_short_errors(exc)}") from exc

    analysis_id = parsed.analysis_id or fallback_analysis_id
    decision = Decision(
        analysis_id=analysis_id,
        kind=parsed.decision,
        confidence=parsed.confidence,
        reasoning=parsed.reasoning,
        raw=dict(payload),
    )
    if parsed.decision is DecisionKind.NO_TRADE:
        return decision

    problem = None
    if parsed.trade_params is None:
        problem = "trade parameters missing"
    else:
        try:
            params = TradeParamsPayload.model_validate(parsed.trade_params)
        except ValidationError as exc:
            problem = _short_errors(exc)
        else:
            decision.trade_params = TradeParams(
                side=params.side,
                entry_price=params.entry_price,
                stop_loss=params.stop_loss,
                take_profit=params.take_profit,
                lot_size=params.lot_size,
            )

    if problem is not None:
        logger.warning("Downgrading TRADE decision %s to NO_TRADE: %s", analysis_id, problem)
        decision.kind = DecisionKind.NO_TRADE
        decision.degraded = True
        decision.reasoning = f"Rejected trade parameters ({problem}). {parsed.reasoning}".strip()
    return decision
