import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Optional, Union

from .config import TITLE_MAX_LENGTH
from .errors import ConsoleError, PersistenceError, ValidationError
from .geo import is_valid_position
from .mapbox import GeocodeClient
from .pinStore import PinStore
from .renderer import PreviewMarker
from .schemas import Operator, PinCreate, PinRead, PinType, PinUpdate

logger = logging.getLogger(__name__)

PREVIEW_ID = "pin-preview"


class AuthoringState(str, Enum):
    IDLE = "idle"
    AWAITING_MAP_CLICK = "awaiting_map_click"
    EDITING = "editing"
    SAVING = "saving"


class AuthoringMode(str, Enum):
    CREATE = "create"
    EDIT = "edit"


@dataclass
class PinForm:
    id: Optional[str] = None
    type: Optional[str] = None
    title: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: str = ""
    report_id: Optional[str] = None


def _form_from_prefill(prefill: Union[PinForm, dict]) -> PinForm:
    if isinstance(prefill, PinForm):
        return replace(prefill)
    aliases = {"locationName": "location_name", "reportId": "report_id"}
    fields = {aliases.get(k, k): v for k, v in prefill.items()}
    known = PinForm.__dataclass_fields__
    return PinForm(**{k: v for k, v in fields.items() if k in known and v is not None})


class PinAuthoringController:
    """Create/edit workflow for a single pin.

    ``idle -> awaiting_map_click -> editing -> saving -> idle`` on success,
    back to ``editing`` on failure with the form left intact. Edit mode and
    prefills that already carry coordinates start directly in ``editing``.
    """

    def __init__(self, store: PinStore, geocoder: GeocodeClient, operator: Optional[Operator] = None):
        self._store = store
        self._geocoder = geocoder
        self.operator = operator or Operator()
        self.state = AuthoringState.IDLE
        self.mode: Optional[AuthoringMode] = None
        self.form = PinForm()
        self.error: Optional[ConsoleError] = None
        self.locating = False
        self._locked_type: Optional[str] = None
        self._click_seq = 0

    @property
    def is_open(self) -> bool:
        return self.state != AuthoringState.IDLE

    @property
    def type_locked(self) -> bool:
        return self._locked_type is not None

    def open(self, mode: Union[AuthoringMode, str], source: Union[PinRead, PinForm, dict, None] = None) -> AuthoringState:
        mode = AuthoringMode(mode)
        self.mode = mode
        self.error = None
        self._click_seq += 1
        self.locating = False

        if mode == AuthoringMode.EDIT:
            if not isinstance(source, PinRead):
                raise ValidationError("Editing requires an existing pin")
            self.form = PinForm(
                id=source.id,
                type=source.type,
                title=source.title,
                latitude=source.latitude,
                longitude=source.longitude,
                location_name=source.location_name,
                report_id=source.report_id,
            )
            self._locked_type = source.type if source.report_id else None
            self.state = AuthoringState.EDITING
            return self.state

        self.form = _form_from_prefill(source) if source is not None else PinForm()
        self.form.id = None
        # Linked reports dictate the type
        self._locked_type = self.form.type if self.form.report_id else None
        if self.form.latitude is not None and self.form.longitude is not None:
            self.state = AuthoringState.EDITING
        else:
            self.state = AuthoringState.AWAITING_MAP_CLICK
        return self.state

    async def handle_map_click(self, lng: float, lat: float) -> bool:
        if self.state not in (AuthoringState.AWAITING_MAP_CLICK, AuthoringState.EDITING):
            return False
        if not is_valid_position(lat, lng):
            logger.warning("Ignoring map click outside valid range: %s, %s", lat, lng)
            return False

        self._click_seq += 1
        seq = self._click_seq
        self.form.latitude = lat
        self.form.longitude = lng
        self.locating = True
        location_name = await self._geocoder.reverse_geocode(lat, lng)
        # A later click (or a reopen) owns the form now
        if seq != self._click_seq:
            return False
        self.locating = False
        self.form.location_name = location_name
        if self.state == AuthoringState.AWAITING_MAP_CLICK:
            self.state = AuthoringState.EDITING
        return True

    def change_location(self) -> None:
        if self.state != AuthoringState.EDITING:
            return
        # Report-linked pins keep the report's location
        if self.mode == AuthoringMode.CREATE and self.type_locked:
            return
        self.state = AuthoringState.AWAITING_MAP_CLICK

    def update_form(self, **fields: Any) -> None:
        if self.state not in (AuthoringState.AWAITING_MAP_CLICK, AuthoringState.EDITING):
            raise ValidationError("No pin form is open")
        for name, value in fields.items():
            if name == "type":
                if self.type_locked:
                    logger.info("Type is locked to %s by the linked report", self._locked_type)
                    continue
                self.form.type = value
            elif name == "title":
                value = value or ""
                if len(value) > TITLE_MAX_LENGTH:
                    raise ValidationError(f"Title must be {TITLE_MAX_LENGTH} characters or less")
                self.form.title = value
            elif name in ("location_name", "locationName", "latitude", "longitude"):
                logger.debug("Ignoring %s from the form; location comes from the map", name)
            else:
                raise ValidationError(f"Unknown pin field: {name}")

    def validate(self) -> list[str]:
        problems = []
        if not self.form.type:
            problems.append("Pin type is required")
        elif self.form.type not in {t.value for t in PinType}:
            problems.append(f"Unknown pin type: {self.form.type}")
        if not self.form.title.strip():
            problems.append("Title is required")
        elif len(self.form.title.strip()) > TITLE_MAX_LENGTH:
            problems.append(f"Title must be {TITLE_MAX_LENGTH} characters or less")
        if self.form.latitude is None or self.form.longitude is None:
            problems.append("Location is required: click on the map")
        if not (self.form.location_name or "").strip():
            problems.append("Location name is required")
        return problems

    def save(self, form_data: Optional[dict] = None) -> str:
        if self.state == AuthoringState.SAVING:
            raise ValidationError("Save already in progress")
        if self.state == AuthoringState.IDLE:
            raise ValidationError("No pin form is open")
        if form_data:
            self.update_form(**{k: v for k, v in form_data.items() if k not in ("id", "reportId", "report_id")})
        if self.type_locked:
            self.form.type = self._locked_type

        problems = self.validate()
        if problems:
            self.error = ValidationError("; ".join(problems))
            raise self.error

        self.state = AuthoringState.SAVING
        try:
            if self.mode == AuthoringMode.EDIT:
                pin_id = self.form.id
                self._store.update(
                    pin_id,
                    PinUpdate(
                        type=self.form.type,
                        title=self.form.title.strip(),
                        latitude=self.form.latitude,
                        longitude=self.form.longitude,
                        location_name=self.form.location_name,
                    ),
                )
            else:
                pin_id = self._store.create(
                    PinCreate(
                        type=self.form.type,
                        title=self.form.title.strip(),
                        latitude=self.form.latitude,
                        longitude=self.form.longitude,
                        location_name=self.form.location_name,
                        report_id=self.form.report_id,
                    ),
                    self.operator,
                )
        except ConsoleError as exc:
            logger.error("Error saving pin: %s", exc)
            self.error = exc
            self.state = AuthoringState.EDITING
            raise
        except Exception as exc:
            logger.exception("Unexpected error saving pin")
            self.error = PersistenceError("Could not save pin")
            self.state = AuthoringState.EDITING
            raise self.error from exc

        logger.info("Pin %s saved (%s)", pin_id, self.mode.value)
        self.close()
        return pin_id

    def reset(self) -> None:
        if self.mode != AuthoringMode.CREATE or not self.is_open:
            return
        self._click_seq += 1
        self.locating = False
        self.form = PinForm()
        self._locked_type = None
        self.error = None
        self.state = AuthoringState.AWAITING_MAP_CLICK

    def close(self) -> None:
        self._click_seq += 1
        self.locating = False
        self.state = AuthoringState.IDLE
        self.mode = None
        self.form = PinForm()
        self._locked_type = None
        self.error = None

    def preview_marker(self) -> Optional[PreviewMarker]:
        if not self.is_open or self.form.latitude is None or self.form.longitude is None:
            return None
        return PreviewMarker(
            id=self.form.id or PREVIEW_ID,
            type=self.form.type or "Default",
            title=self.form.title or "New pin",
            lng=self.form.longitude,
            lat=self.form.latitude,
            location_name=self.form.location_name or None,
            report_id=self.form.report_id,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "form": asdict(self.form),
            "type_locked": self.type_locked,
            "locating": self.locating,
            "error": str(self.error) if self.error else None,
        }
