from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from telematics.config import settings
from telematics.db.models import GpsApiLog, PositionHistory, Vehicle, VehiclePosition
from telematics.policies.alert_rules import PreviousState, evaluate_alert_rules
from telematics.schemas.events import EventCandidate, WsMessage
from telematics.schemas.poll import PollRequest, PollSummary
from telematics.schemas.telemetry import NormalizedPosition
from telematics.services.event_service import EventService, event_payload
from telematics.services.gps51_client import (
    Gps51Client,
    Gps51Error,
    Gps51TokenError,
    TOKEN_ERROR_CODES,
    timed_call,
)
from telematics.services.history_sampler import build_sample, should_persist
from telematics.services.normalizer import normalize_record
from telematics.services.rate_limit import DbBackoffStore
from telematics.services.token_store import TokenStore, VendorToken
from telematics.services.trip_sync import TripSyncNotifier
from telematics.utils.time import ensure_utc, utc_now

logger = logging.getLogger("telematics.poll")

Broadcaster = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class PollOutcome:
    data: Dict[str, Any]
    summary: Optional[PollSummary] = None
    from_cache: bool = False


@dataclass
class _Snapshot:
    """Last known state of one device: the stored row, or its latest record in this cycle."""

    previous: PreviousState
    gps_time: Optional[dt.datetime]


@dataclass
class _ChunkResult:
    written: List[NormalizedPosition] = field(default_factory=list)
    candidates: List[EventCandidate] = field(default_factory=list)
    history: int = 0
    stale: int = 0
    states: Dict[str, _Snapshot] = field(default_factory=dict)


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def position_payload(row: VehiclePosition) -> Dict[str, Any]:
    gps_time = ensure_utc(row.gps_time)
    cached_at = ensure_utc(row.cached_at)
    return {
        "device_id": row.device_id,
        "latitude": row.latitude,
        "longitude": row.longitude,
        "speed": row.speed,
        "heading": row.heading,
        "altitude": row.altitude,
        "battery_percent": row.battery_percent,
        "ignition_on": row.ignition_on,
        "ignition_confidence": row.ignition_confidence,
        "ignition_detection_method": row.ignition_detection_method,
        "is_online": row.is_online,
        "is_overspeeding": row.is_overspeeding,
        "total_mileage": row.total_mileage,
        "data_quality": row.data_quality,
        "gps_time": gps_time.isoformat() if gps_time else None,
        "cached_at": cached_at.isoformat() if cached_at else None,
    }


class PollService:
    """One GPS51 poll cycle: fetch, normalize, store, sample history, raise events.

    Every invocation runs sequentially; the only shared state lives in the
    database (token, rate-limit deadline, positions, events).
    """

    def __init__(
        self,
        client: Optional[Gps51Client] = None,
        trip_sync: Optional[TripSyncNotifier] = None,
        events: Optional[EventService] = None,
    ):
        self._client = client
        self.trip_sync = trip_sync or TripSyncNotifier()
        self.events = events or EventService(dt.timedelta(minutes=settings.alert_cooldown_minutes))
        self._broadcast: Optional[Broadcaster] = None

    @property
    def client(self) -> Gps51Client:
        if self._client is None:
            self._client = Gps51Client()
        return self._client

    def bind_broadcaster(self, broadcaster: Broadcaster) -> None:
        self._broadcast = broadcaster

    def token_store(self, db: Session) -> TokenStore:
        return TokenStore(db, self.client)

    async def close(self) -> None:
        await self.trip_sync.drain()
        if self._client is not None:
            await self._client.close()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run(self, db: Session, request: PollRequest, now: Optional[dt.datetime] = None) -> PollOutcome:
        now = now or utc_now()
        action = request.action
        try:
            return await self._run(db, request, now)
        except Gps51Error as e:
            logger.error("GPS51 poll failed (action=%s): %s", action, e)
            self.log_api_call(db, action, request.body_payload, 0, None, str(e), 0, now)
            raise

    async def _run(self, db: Session, request: PollRequest, now: dt.datetime) -> PollOutcome:
        action = request.action

        if action == "lastposition" and request.use_cache:
            cached = self.cached_positions(db, now)
            if cached:
                logger.info("Returning %d cached positions", len(cached))
                return PollOutcome(data={"records": cached, "fromCache": True}, from_cache=True)

        self.client.limiter.bind_store(DbBackoffStore(db))
        store = self.token_store(db)
        token = await store.get_valid_token(now)
        logger.debug("Token retrieved: serverid=%s username=%s", token.serverid, token.username)

        body = dict(request.body_payload or {})
        if action == "querymonitorlist":
            body = {"username": token.username, **body}
        elif action == "lastposition":
            device_ids = body.get("deviceids")
            if not isinstance(device_ids, list) or not device_ids:
                device_ids = await self.device_ids(db, token, now)
                logger.info("Polling %d devices", len(device_ids))
            body["deviceids"] = device_ids
            if body.get("lastquerypositiontime") is None:
                body["lastquerypositiontime"] = 0

        result, duration_ms = await timed_call(self.client, action, token.token, token.serverid, body)
        status = result.get("status", 0)
        self.log_api_call(db, action, body, status, result, None, duration_ms, now)

        if isinstance(status, int) and status in TOKEN_ERROR_CODES:
            store.invalidate(now)
            raise Gps51TokenError(status)

        summary = None
        if action == "querymonitorlist" and result.get("groups"):
            self.sync_vehicles(db, _devices_from_groups(result["groups"]), now)
        if action == "lastposition" and result.get("records"):
            summary = await self.sync_positions(db, result["records"], now)

        return PollOutcome(data=result, summary=summary)

    # ------------------------------------------------------------------
    # Cache and device list
    # ------------------------------------------------------------------
    def cached_positions(self, db: Session, now: dt.datetime) -> Optional[List[Dict[str, Any]]]:
        newest = db.query(func.max(VehiclePosition.cached_at)).scalar()
        newest = ensure_utc(newest)
        if newest is None or (now - newest).total_seconds() > settings.cache_ttl_s:
            return None
        rows = db.query(VehiclePosition).order_by(VehiclePosition.device_id.asc()).all()
        return [position_payload(r) for r in rows]

    async def device_ids(self, db: Session, token: VendorToken, now: dt.datetime) -> List[str]:
        known = [d for (d,) in db.query(Vehicle.device_id).order_by(Vehicle.device_id.asc()).all()]
        if known:
            return known

        try:
            result = await self.client.call(
                "querymonitorlist", token.token, token.serverid, {"username": token.username}
            )
        except Gps51Error as e:
            logger.error("Failed to call querymonitorlist: %s", e)
            return []
        if result.get("status") != 0 or not result.get("groups"):
            logger.error("Failed to fetch device list (status=%s)", result.get("status"))
            return []

        devices = _devices_from_groups(result["groups"])
        self.sync_vehicles(db, devices, now)
        return [str(d["deviceid"]) for d in devices if d.get("deviceid") is not None]

    def sync_vehicles(self, db: Session, devices: List[Dict[str, Any]], now: dt.datetime) -> int:
        synced = 0
        for chunk in _chunks([d for d in devices if d.get("deviceid") is not None], settings.batch_size):
            try:
                for d in chunk:
                    device_id = str(d["deviceid"])
                    row = db.get(Vehicle, device_id)
                    if row is None:
                        row = Vehicle(device_id=device_id, vehicle_status="active")
                        db.add(row)
                    row.device_name = d.get("devicename") or device_id
                    row.group_id = _str_or_none(d.get("groupid"))
                    row.group_name = d.get("groupname")
                    row.device_type = _str_or_none(d.get("devicetype"))
                    row.sim_number = _str_or_none(d.get("simnumber"))
                    row.gps_owner = d.get("creater")
                    row.last_synced_at = now
                db.commit()
                synced += len(chunk)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Failed to sync vehicle chunk of %d", len(chunk))
        logger.info("Synced %d vehicles", synced)
        return synced

    # ------------------------------------------------------------------
    # Position sync
    # ------------------------------------------------------------------
    async def sync_positions(
        self,
        db: Session,
        records: List[Any],
        now: Optional[dt.datetime] = None,
    ) -> PollSummary:
        now = now or utc_now()
        summary = PollSummary(records=len(records))

        positions = [normalize_record(r, settings.offline_threshold_ms, now) for r in records]
        positions = [p for p in positions if p.device_id]
        if not positions:
            return summary

        device_ids = sorted({p.device_id for p in positions})
        # Must be read before any upsert, or transitions compare a record to itself.
        snapshots = self._snapshot(db, device_ids)
        priors = self._latest_samples(db, device_ids)

        written: List[NormalizedPosition] = []
        candidates: List[EventCandidate] = []
        for chunk in _chunks(positions, settings.batch_size):
            try:
                res = self._write_chunk(db, chunk, snapshots, priors, now)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                summary.failed_chunks += 1
                logger.exception("Failed to write position chunk of %d", len(chunk))
                continue
            snapshots.update(res.states)
            written.extend(res.written)
            candidates.extend(res.candidates)
            summary.history_written += res.history
            summary.stale_skipped += res.stale

        summary.positions_updated = len(written)
        summary.events_detected = len(candidates)

        inserted = []
        if candidates:
            try:
                inserted = self.events.record(db, candidates, now)
                summary.duplicates_filtered = len(candidates) - len(inserted)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Failed to insert %d proactive events", len(candidates))
        summary.events_inserted = len(inserted)

        for row in inserted:
            if row.event_type == "ignition_off":
                self.trip_sync.notify(row.device_id, now)

        moving = sum(1 for p in written if p.is_moving)
        logger.info(
            "Poll cycle: %d positions updated (%d moving), %d stale skipped, %d history written, "
            "%d events inserted, %d duplicates filtered",
            summary.positions_updated, moving, summary.stale_skipped, summary.history_written,
            summary.events_inserted, summary.duplicates_filtered,
        )

        await self._publish(db, written, inserted)
        return summary

    def _snapshot(self, db: Session, device_ids: List[str]) -> Dict[str, _Snapshot]:
        rows = db.query(VehiclePosition).filter(VehiclePosition.device_id.in_(device_ids)).all()
        return {
            r.device_id: _Snapshot(
                previous=PreviousState(ignition_on=r.ignition_on, speed_kmh=r.speed),
                gps_time=ensure_utc(r.gps_time),
            )
            for r in rows
        }

    def _latest_samples(self, db: Session, device_ids: List[str]) -> Dict[str, PositionHistory]:
        latest = (
            db.query(PositionHistory.device_id, func.max(PositionHistory.recorded_at).label("recorded_at"))
            .filter(PositionHistory.device_id.in_(device_ids))
            .group_by(PositionHistory.device_id)
            .subquery()
        )
        rows = (
            db.query(PositionHistory)
            .join(
                latest,
                (PositionHistory.device_id == latest.c.device_id)
                & (PositionHistory.recorded_at == latest.c.recorded_at),
            )
            .all()
        )
        return {r.device_id: r for r in rows}

    def _write_chunk(
        self,
        db: Session,
        chunk: List[NormalizedPosition],
        snapshots: Dict[str, _Snapshot],
        priors: Dict[str, PositionHistory],
        now: dt.datetime,
    ) -> _ChunkResult:
        res = _ChunkResult()
        rows: Dict[str, VehiclePosition] = {}
        for pos in chunk:
            # Records apply in delivery order: a repeated device compares to its
            # previous record in this batch, not to the stored row.
            snap = res.states.get(pos.device_id) or snapshots.get(pos.device_id)
            if snap is not None and _is_stale(pos, snap.gps_time):
                logger.debug("Skipping stale record for %s (%s < %s)", pos.device_id, pos.last_update, snap.gps_time)
                res.stale += 1
                continue

            row = rows.get(pos.device_id) or db.get(VehiclePosition, pos.device_id)
            if row is None:
                row = VehiclePosition(device_id=pos.device_id)
                db.add(row)
            rows[pos.device_id] = row
            _apply_position(row, pos, now)

            if should_persist(
                priors.get(pos.device_id),
                pos,
                now,
                settings.history_distance_threshold_m,
                settings.history_time_threshold_s,
            ):
                sample = build_sample(pos, now)
                db.add(sample)
                priors[pos.device_id] = sample
                res.history += 1

            res.candidates.extend(evaluate_alert_rules(pos, snap.previous if snap else None))
            res.states[pos.device_id] = _Snapshot(
                previous=PreviousState(ignition_on=pos.ignition_on, speed_kmh=pos.speed_kmh),
                gps_time=pos.last_update,
            )
            res.written.append(pos)
        return res

    async def _publish(self, db: Session, written: List[NormalizedPosition], inserted: List[Any]) -> None:
        if self._broadcast is None:
            return
        for pos in written:
            row = db.get(VehiclePosition, pos.device_id)
            if row is not None:
                await self._broadcast(pos.device_id, WsMessage(kind="position", data=position_payload(row)).model_dump())
        for ev in inserted:
            await self._broadcast(ev.device_id, WsMessage(kind="event", data=event_payload(ev)).model_dump())

    # ------------------------------------------------------------------
    # API call log (errors only)
    # ------------------------------------------------------------------
    def log_api_call(
        self,
        db: Session,
        action: str,
        request_body: Any,
        status: Any,
        response_body: Any,
        error_message: Optional[str],
        duration_ms: int,
        now: Optional[dt.datetime] = None,
    ) -> None:
        if status == 0 and not error_message:
            return
        try:
            db.add(GpsApiLog(
                action=action,
                request_body=json.dumps(request_body, default=str) if request_body is not None else None,
                response_status=status if isinstance(status, int) else None,
                response_body=json.dumps(response_body, default=str) if response_body is not None else None,
                error_message=error_message,
                duration_ms=duration_ms,
                created_at=now or utc_now(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to log API call: %s", e)


def _is_stale(pos: NormalizedPosition, stored_time: Optional[dt.datetime]) -> bool:
    """Last write wins by vendor timestamp; a record without one never replaces a timestamped row."""
    if stored_time is None:
        return False
    return pos.last_update is None or pos.last_update < stored_time


def _apply_position(row: VehiclePosition, pos: NormalizedPosition, now: dt.datetime) -> None:
    row.latitude = pos.lat
    row.longitude = pos.lon
    row.speed = pos.speed_kmh
    row.heading = pos.heading
    row.altitude = pos.altitude
    row.battery_percent = pos.battery_percent
    row.signal_strength = pos.signal_strength
    row.ignition_on = pos.ignition_on
    row.ignition_confidence = pos.ignition_confidence
    row.ignition_detection_method = pos.ignition_method
    row.is_moving = pos.is_moving
    row.is_online = pos.is_online
    row.is_overspeeding = pos.is_overspeeding
    row.total_mileage = pos.total_mileage
    row.status_text = pos.status_text
    row.data_quality = pos.data_quality
    row.gps_time = pos.last_update
    row.gps_fix_time = pos.gps_fix_time
    row.sync_priority = "high" if pos.is_moving else "normal"
    row.cached_at = now
    row.last_synced_at = now


def _devices_from_groups(groups: Any) -> List[Dict[str, Any]]:
    devices: List[Dict[str, Any]] = []
    for g in groups or []:
        if isinstance(g, dict):
            devices.extend(d for d in g.get("devices") or [] if isinstance(d, dict))
    return devices


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)
