import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import OperationalError

from . import dispatch, renderer, schemas
from .config import CORS_ORIGINS
from .console import ConsoleSession
from .db import Base, SessionLocal, engine
from .errors import ConsoleError, NotFoundError, PersistenceError, StoreError, ValidationError
from .geo import LatLng
from .mapbox import GeocodeClient
from .pinStore import PinStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Risk Map Console API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared so every view sees every mutation
pin_store = PinStore(SessionLocal)
geocoder = GeocodeClient()


def get_store() -> PinStore:
    return pin_store


def get_geocoder() -> GeocodeClient:
    return geocoder


def get_operator(
    x_operator_id: Optional[str] = Header(None),
    x_operator_name: Optional[str] = Header(None),
) -> schemas.Operator:
    operator = schemas.Operator()
    if x_operator_id:
        operator.id = x_operator_id
    if x_operator_name:
        operator.name = x_operator_name
    return operator


def _http_error(exc: ConsoleError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PersistenceError, StoreError)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.on_event("startup")
def startup():
    # Retry briefly so the API can come up even if Postgres is still booting
    for attempt in range(1, 11):
        try:
            Base.metadata.create_all(bind=engine)
            return
        except OperationalError:
            if attempt == 10:
                raise
            time.sleep(1.5)


@app.on_event("shutdown")
async def shutdown():
    await geocoder.aclose()


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/pins", response_model=list[schemas.PinRead])
def list_pins(
    types: list[str] = Query(default=[]),
    category: list[schemas.PinCategory] = Query(default=[]),
    report_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    q: Optional[str] = None,
    store: PinStore = Depends(get_store),
):
    filters = schemas.PinFilters(
        types=types,
        categories=category,
        report_id=report_id,
        date_from=date_from,
        date_to=date_to,
        search_query=q,
    )
    try:
        return store.fetch(filters)
    except ConsoleError as exc:
        raise _http_error(exc) from exc


@app.get("/api/pins/{pin_id}", response_model=schemas.PinRead)
def read_pin(pin_id: str, store: PinStore = Depends(get_store)):
    try:
        pin = store.get(pin_id)
    except ConsoleError as exc:
        raise _http_error(exc) from exc
    if pin is None:
        raise HTTPException(status_code=404, detail="Pin not found")
    return pin


@app.post("/api/pins", response_model=schemas.PinRead, status_code=201)
def create_pin(
    pin: schemas.PinCreate,
    store: PinStore = Depends(get_store),
    operator: schemas.Operator = Depends(get_operator),
):
    try:
        pin_id = store.create(pin, operator)
        return store.get(pin_id)
    except ConsoleError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/pins/{pin_id}", response_model=schemas.PinRead)
def update_pin(pin_id: str, patch: schemas.PinUpdate, store: PinStore = Depends(get_store)):
    try:
        store.update(pin_id, patch)
        return store.get(pin_id)
    except ConsoleError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/pins/{pin_id}", status_code=204)
def remove_pin(pin_id: str, store: PinStore = Depends(get_store)):
    try:
        store.delete(pin_id)
    except ConsoleError as exc:
        raise _http_error(exc) from exc
    # Explicit 204 response keeps FastAPI from serializing an empty body
    return Response(status_code=204)


@app.get("/api/geocode", response_model=list[schemas.Suggestion])
async def geocode(q: str, client: GeocodeClient = Depends(get_geocoder)):
    return await client.search(q)


@app.get("/api/reverse")
async def reverse(lat: float, lon: float, client: GeocodeClient = Depends(get_geocoder)):
    return {"locationName": await client.reverse_geocode(lat, lon)}


@app.get("/api/route", response_model=Optional[schemas.RouteResult])
async def route(
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    client: GeocodeClient = Depends(get_geocoder),
):
    # null means the route is unavailable, not an error
    return await client.compute_route(LatLng(from_lat, from_lng), LatLng(to_lat, to_lng))


@app.get("/api/legend")
def legend():
    return renderer.legend()


@app.get("/api/response-time")
def response_time(dispatch_time: str = Query(..., alias="dispatch"), arrival: str = Query(...)):
    try:
        return {
            "label": dispatch.compute_response_time(dispatch_time, arrival),
            "minutes": dispatch.response_minutes(dispatch_time, arrival),
        }
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.websocket("/ws/console")
async def console(
    websocket: WebSocket,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    store: PinStore = Depends(get_store),
    client: GeocodeClient = Depends(get_geocoder),
):
    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    operator = get_operator(
        websocket.headers.get("x-operator-id"), websocket.headers.get("x-operator-name")
    )
    session = ConsoleSession(store, client, outbox.put_nowait, operator=operator)

    async def locate() -> Optional[LatLng]:
        # Position reported by the browser when it opened the socket
        if lat is None or lng is None:
            return None
        return LatLng(lat, lng)

    async def pump():
        while True:
            await websocket.send_json(await outbox.get())

    sender = asyncio.create_task(pump())
    try:
        await session.start(locate)
        while True:
            await session.handle(await websocket.receive_json())
    except WebSocketDisconnect:
        logger.info("Console view disconnected")
    finally:
        session.close()
        sender.cancel()
