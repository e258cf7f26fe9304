"""
expenseflow/rates.py

Kilometer rates and trip cost resolution.

- A KmRate is valid over [effective_from, effective_to); an open-ended rate
  has effective_to = NULL. When windows overlap, the latest effective_from wins.
- Trip cost is the source of truth. Distance and rate only derive it, and the
  rate used is copied onto the trip (km_rate_id + km_rate_value) so later rate
  edits never silently change an existing trip.

IMPORTANT:
- recalculate_trip_costs() never touches a trip that already holds a budget
  reservation, or that reached a terminal status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_

from . import audit
from .errors import NotFoundError, RateNotFoundError, ValidationError
from .extensions import db
from .ledger import reservation_for
from .models import CostMethod, KmRate, RequestStatus, TripRequest, utcnow
from .utils import money, parse_date, parse_decimal, unit_of_work

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostResolution:
    cost: Decimal
    method: str
    km_rate_id: Optional[int] = None
    km_rate_value: Optional[Decimal] = None
    distance_km: Optional[Decimal] = None


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------
def resolve_rate(effective_date: date) -> KmRate:
    """Return the rate in force on effective_date or raise RateNotFoundError."""
    rate = (
        KmRate.query
        .filter(KmRate.effective_from <= effective_date)
        .filter(or_(KmRate.effective_to.is_(None), KmRate.effective_to > effective_date))
        .order_by(KmRate.effective_from.desc(), KmRate.id.desc())
        .first()
    )
    if rate is None:
        raise RateNotFoundError(effective_date)
    return rate


def resolve_cost(
    method: str,
    distance_km=None,
    direct_amount=None,
    effective_date: Optional[date] = None,
) -> CostResolution:
    """
    Compute the cost of a trip.

    direct      -> direct_amount unchanged (quantised)
    km          -> distance_km x rate in force on effective_date
    destination -> distance_km was supplied by the route lookup; priced as km
    """
    if method not in CostMethod.ALL:
        raise ValidationError(f"Unknown cost method '{method}'", field="cost_method")

    if method == CostMethod.DIRECT:
        amount = parse_decimal(direct_amount, field="cost")
        if amount is None:
            raise ValidationError("A direct cost requires an amount", field="cost")
        if amount < 0:
            raise ValidationError("Cost cannot be negative", field="cost")
        return CostResolution(cost=money(amount), method=method)

    distance = parse_decimal(distance_km, field="kilometers")
    if distance is None:
        raise ValidationError("Distance is required for kilometer based costs", field="kilometers")
    if distance < 0:
        raise ValidationError("Distance cannot be negative", field="kilometers")
    if effective_date is None:
        raise ValidationError("Trip date is required to resolve the kilometer rate", field="trip_date")

    rate = resolve_rate(effective_date)
    rate_value = Decimal(str(rate.rate_value))
    return CostResolution(
        cost=money(distance * rate_value),
        method=method,
        km_rate_id=rate.id,
        km_rate_value=rate_value,
        distance_km=distance,
    )


def apply_cost(trip: TripRequest, resolution: CostResolution) -> None:
    """Copy a CostResolution onto a trip."""
    trip.cost = resolution.cost
    trip.cost_method = resolution.method
    trip.km_rate_id = resolution.km_rate_id
    trip.km_rate_value = resolution.km_rate_value
    if resolution.distance_km is not None:
        trip.kilometers = resolution.distance_km


# ---------------------------------------------------------------------
# Rate management
# ---------------------------------------------------------------------
def _rate_fields(payload: dict, rate: Optional[KmRate] = None) -> dict:
    rate_value = parse_decimal(payload.get("rate_value"), field="rate_value")
    effective_from = parse_date(payload.get("effective_from"), field="effective_from")
    effective_to = parse_date(payload.get("effective_to"), field="effective_to")

    if rate is not None:
        rate_value = rate_value if rate_value is not None else Decimal(str(rate.rate_value))
        effective_from = effective_from or rate.effective_from
        if "effective_to" not in payload:
            effective_to = rate.effective_to

    if rate_value is None or rate_value <= 0:
        raise ValidationError("Rate must be a positive number", field="rate_value")
    if effective_from is None:
        raise ValidationError("Effective from date is required", field="effective_from")
    if effective_to is not None and effective_to <= effective_from:
        raise ValidationError("Effective to must be after effective from", field="effective_to")

    return {
        "rate_value": rate_value,
        "effective_from": effective_from,
        "effective_to": effective_to,
        "description": (payload.get("description") or "").strip() or (rate.description if rate else None),
    }


def list_rates() -> list[KmRate]:
    return KmRate.query.order_by(KmRate.effective_from.desc(), KmRate.id.desc()).all()


def create_rate(payload: dict, actor) -> KmRate:
    fields = _rate_fields(payload)
    with unit_of_work():
        rate = KmRate(created_by=actor.id, **fields)
        db.session.add(rate)
        db.session.flush()
        audit.record(actor, "KM_RATE_CREATED", entity=rate, after=audit.serialize_model(rate))
    logger.info("KM rate %s created by %s (%s from %s)", rate.id, actor.username, rate.rate_value, rate.effective_from)
    return rate


def update_rate(rate_id: int, payload: dict, actor) -> KmRate:
    with unit_of_work():
        rate = db.session.get(KmRate, rate_id)
        if rate is None:
            raise NotFoundError("KmRate", rate_id)
        before = audit.serialize_model(rate)
        for key, value in _rate_fields(payload, rate).items():
            setattr(rate, key, value)
        db.session.flush()
        audit.record(actor, "KM_RATE_UPDATED", entity=rate, before=before, after=audit.serialize_model(rate))
    return rate


def delete_rate(rate_id: int, actor) -> None:
    """Delete a rate. Refused while any trip references it."""
    with unit_of_work():
        rate = db.session.get(KmRate, rate_id)
        if rate is None:
            raise NotFoundError("KmRate", rate_id)
        in_use = TripRequest.query.filter_by(km_rate_id=rate_id).count()
        if in_use:
            raise ValidationError(
                f"Rate {rate_id} is used by {in_use} trip request(s) and cannot be deleted",
                field="rate_id",
                trips=in_use,
            )
        audit.record(actor, "KM_RATE_DELETED", entity=rate, before=audit.serialize_model(rate))
        db.session.delete(rate)


# ---------------------------------------------------------------------
# Bulk correction
# ---------------------------------------------------------------------
def recalculate_trip_costs(actor=None, rate_id: Optional[int] = None) -> int:
    """
    Re-price kilometer based trips with the rate now in force on their date.

    Only trips that are non-terminal and hold no reservation are touched.
    When rate_id is given, only trips priced with that rate are considered.
    Returns the number of trips whose cost changed.
    """
    query = TripRequest.query.filter(
        TripRequest.cost_method.in_((CostMethod.KM, CostMethod.DESTINATION)),
        TripRequest.status.notin_(tuple(RequestStatus.TERMINAL)),
        TripRequest.kilometers.isnot(None),
    )
    if rate_id is not None:
        query = query.filter(TripRequest.km_rate_id == rate_id)

    updated = 0
    with unit_of_work():
        for trip in query.order_by(TripRequest.id).all():
            if reservation_for(trip.id) > 0:
                continue
            try:
                resolution = resolve_cost(trip.cost_method, trip.kilometers, None, trip.trip_date)
            except RateNotFoundError:
                logger.warning("No rate in force for trip %s dated %s; skipped", trip.id, trip.trip_date)
                continue
            if resolution.cost == money(trip.cost) and resolution.km_rate_id == trip.km_rate_id:
                continue

            before = audit.serialize_model(trip)
            apply_cost(trip, resolution)
            trip.cost_updated_at = utcnow()
            trip.cost_updated_by = getattr(actor, "id", None)
            db.session.flush()
            audit.record(
                actor,
                "TRIP_COST_RECALCULATED",
                {"old_cost": before["cost"], "new_cost": resolution.cost, "km_rate_id": resolution.km_rate_id},
                entity=trip,
                before=before,
                after=audit.serialize_model(trip),
            )
            updated += 1

    logger.info("Recalculated %s trip cost(s) (rate filter: %s)", updated, rate_id)
    return updated
