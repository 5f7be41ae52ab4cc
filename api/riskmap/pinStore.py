import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import models
from .config import TITLE_MAX_LENGTH, UNKNOWN_LOCATION
from .errors import NotFoundError, PersistenceError, StoreError, ValidationError
from .schemas import (
    FACILITY_TYPES,
    Operator,
    PinCategory,
    PinCreate,
    PinFilters,
    PinRead,
    PinUpdate,
    generate_search_terms,
    pin_category,
)

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "permission-denied"
INSUFFICIENT_PRIVILEGE = "42501"

OnData = Callable[[list[PinRead]], None]
OnError = Callable[[StoreError], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _store_error(exc: SQLAlchemyError) -> StoreError:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate == INSUFFICIENT_PRIVILEGE or "permission denied" in str(exc).lower():
        return StoreError(PERMISSION_DENIED, "Missing or insufficient permissions")
    if isinstance(exc, OperationalError):
        return StoreError("unavailable", "Pin store is unreachable")
    return StoreError("internal", str(exc))


def matches_search(row: models.Pin, search_query: str) -> bool:
    query = search_query.strip().lower()
    if not query:
        return True
    for text in (row.title, row.location_name, row.type):
        if query in (text or "").lower():
            return True
    # Every query token has to hit one of the stored terms
    terms = row.search_terms or generate_search_terms(row.title, row.location_name, row.type)
    return all(any(token in term for term in terms) for token in query.split())


def _parse(schema, payload: dict):
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc


def _check_coordinates(latitude: Optional[float], longitude: Optional[float]) -> None:
    if latitude is not None and not -90 <= latitude <= 90:
        raise ValidationError("Invalid latitude: must be between -90 and 90")
    if longitude is not None and not -180 <= longitude <= 180:
        raise ValidationError("Invalid longitude: must be between -180 and 180")


class Subscription:
    def __init__(self, store: "PinStore", filters: PinFilters, on_data: OnData, on_error: Optional[OnError]):
        self.store = store
        self.filters = filters
        self.on_data = on_data
        self.on_error = on_error
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.store._detach(self)


class PinStore:
    """Canonical pin collection with realtime snapshot subscriptions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._subscriptions: list[Subscription] = []

    @property
    def live_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        filters: PinFilters,
        on_data: OnData,
        on_error: Optional[OnError] = None,
    ) -> Callable[[], None]:
        subscription = Subscription(self, filters, on_data, on_error)
        self._subscriptions.append(subscription)
        logger.debug("Pin subscription opened (%d live)", len(self._subscriptions))
        self._deliver(subscription)
        return subscription.unsubscribe

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        logger.debug("Pin subscription closed (%d live)", len(self._subscriptions))

    def _deliver(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        try:
            pins = self.fetch(subscription.filters)
        except StoreError as exc:
            if exc.code == PERMISSION_DENIED:
                # Rules reject queries that match nothing; treat as an empty snapshot
                logger.warning("Permission denied on pin snapshot, delivering empty list: %s", exc.message)
                subscription.on_data([])
                return
            logger.error("Error in pins subscription: %s", exc.message)
            if subscription.on_error is not None:
                subscription.on_error(exc)
            return
        subscription.on_data(pins)

    def _publish(self) -> None:
        for subscription in list(self._subscriptions):
            try:
                self._deliver(subscription)
            except Exception:
                logger.exception("Pin subscriber failed while handling a snapshot")

    def _statement(self, filters: PinFilters):
        stmt = select(models.Pin)
        if filters.types:
            stmt = stmt.where(models.Pin.type.in_(filters.types))
        if filters.categories:
            facility_values = [t.value for t in FACILITY_TYPES]
            wanted = set(filters.categories)
            if wanted == {PinCategory.FACILITY}:
                stmt = stmt.where(models.Pin.type.in_(facility_values))
            elif wanted == {PinCategory.ACCIDENT}:
                stmt = stmt.where(models.Pin.type.not_in(facility_values))
        if filters.report_id:
            stmt = stmt.where(models.Pin.report_id == filters.report_id)
        if filters.date_from is not None:
            stmt = stmt.where(models.Pin.created_at >= _as_utc(filters.date_from))
        if filters.date_to is not None:
            stmt = stmt.where(models.Pin.created_at <= _as_utc(filters.date_to))
        # Newest pins first
        return stmt.order_by(models.Pin.created_at.desc())

    def fetch(self, filters: Optional[PinFilters] = None) -> list[PinRead]:
        filters = filters or PinFilters()
        with self._session_factory() as db:
            try:
                rows = db.scalars(self._statement(filters)).all()
            except SQLAlchemyError as exc:
                raise _store_error(exc) from exc
            if filters.search_query and filters.search_query.strip():
                rows = [row for row in rows if matches_search(row, filters.search_query)]
            return [self._to_read(row) for row in rows]

    def get(self, pin_id: str) -> Optional[PinRead]:
        with self._session_factory() as db:
            try:
                row = db.get(models.Pin, pin_id)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"Could not load pin {pin_id}") from exc
            return self._to_read(row) if row is not None else None

    def create(self, data: Union[PinCreate, dict], operator: Optional[Operator] = None) -> str:
        if isinstance(data, dict):
            data = _parse(PinCreate, data)
        operator = operator or Operator()

        title = (data.title or "").strip()
        if not data.type or not title or data.latitude is None or data.longitude is None:
            raise ValidationError(
                "Missing required fields: type, title, latitude, and longitude are required"
            )
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title must be {TITLE_MAX_LENGTH} characters or less")
        _check_coordinates(data.latitude, data.longitude)

        location_name = (data.location_name or "").strip() or UNKNOWN_LOCATION
        now = self._clock()
        pin = models.Pin(
            type=data.type.value,
            category=pin_category(data.type).value,
            title=title,
            latitude=data.latitude,
            longitude=data.longitude,
            location_name=location_name,
            report_id=data.report_id or None,
            search_terms=generate_search_terms(title, location_name, data.type.value),
            created_at=now,
            updated_at=now,
            created_by=operator.id,
            created_by_name=operator.name,
        )
        with self._session_factory() as db:
            try:
                db.add(pin)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Error creating pin: %s", exc)
                raise PersistenceError("Could not save pin") from exc
            pin_id = pin.id

        logger.info("Pin %s created by %s", pin_id, operator.id)
        self._publish()
        return pin_id

    def update(self, pin_id: str, patch: Union[PinUpdate, dict]) -> None:
        if isinstance(patch, dict):
            patch = _parse(PinUpdate, patch)
        changes = patch.model_dump(exclude_unset=True)

        for required in ("type", "title", "latitude", "longitude", "location_name"):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{required} cannot be cleared")
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise ValidationError("Title cannot be empty")
        if "location_name" in changes and not changes["location_name"].strip():
            raise ValidationError("Location name cannot be empty")
        _check_coordinates(changes.get("latitude"), changes.get("longitude"))

        with self._session_factory() as db:
            try:
                row = db.get(models.Pin, pin_id)
                if row is None:
                    raise NotFoundError(f"Pin {pin_id} not found")
                for field, value in changes.items():
                    if field == "type":
                        value = value.value
                    setattr(row, field, value)
                row.category = pin_category(row.type).value
                if {"title", "location_name", "type"} & changes.keys():
                    row.search_terms = generate_search_terms(row.title, row.location_name, row.type)
                row.updated_at = self._clock()
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Error updating pin %s: %s", pin_id, exc)
                raise PersistenceError("Could not update pin") from exc

        logger.info("Pin %s updated (%s)", pin_id, ", ".join(sorted(changes)) or "no fields")
        self._publish()

    def delete(self, pin_id: str) -> None:
        with self._session_factory() as db:
            try:
                row = db.get(models.Pin, pin_id)
                if row is None:
                    raise NotFoundError(f"Pin {pin_id} not found")
                db.delete(row)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Error deleting pin %s: %s", pin_id, exc)
                raise PersistenceError("Could not delete pin") from exc

        logger.info("Pin %s deleted", pin_id)
        self._publish()

    @staticmethod
    def _to_read(row: models.Pin) -> PinRead:
        return PinRead(
            id=row.id,
            type=row.type,
            category=pin_category(row.type),
            title=row.title,
            latitude=row.latitude,
            longitude=row.longitude,
            location_name=row.location_name,
            report_id=row.report_id,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            created_by=row.created_by,
            created_by_name=row.created_by_name,
        )


class PinFeed:
    """Keeps at most one live store subscription for a mounted view."""

    def __init__(self, store: PinStore, on_data: OnData, on_error: Optional[OnError] = None):
        self._store = store
        self._on_data = on_data
        self._on_error = on_error
        self._filters: Optional[PinFilters] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def filters(self) -> Optional[PinFilters]:
        return self._filters

    @property
    def live(self) -> bool:
        return self._unsubscribe is not None

    def set_filters(self, filters: PinFilters) -> None:
        if self._unsubscribe is not None and filters is self._filters:
            return
        # Old stream goes away before the new one can emit
        self.close()
        self._filters = filters
        self._unsubscribe = self._store.subscribe(filters, self._on_data, self._on_error)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
