import logging
import traceback
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordBearer

from shesurvived import config
from shesurvived.accounts import AccountService
from shesurvived.auth import create_access_token, verify_token
from shesurvived.errors import RecordNotFound, ValidationFailed
from shesurvived.formatting import format_elapsed
from shesurvived.heatmap import safe_walk_view
from shesurvived.lifecycle import alert_state
from shesurvived.models import (
    AlarmStatus,
    AudioChunkUpload,
    BraceletSelection,
    BraceletVerification,
    CancelRequest,
    DashboardView,
    HistoryView,
    LocationUpdate,
    ProfileUpdate,
    SafeWalkView,
    StreamToggle,
    Token,
    TrackingView,
    TriggerRequest,
    User,
    UserCreate,
    UserLogin,
    UserPublic,
)
from shesurvived.notifier import ANY_KEY
from shesurvived.services import ClientContext, Services
from shesurvived.sources import DeviceAudioSource, DeviceLocationSource, SimulatedLocationSource
from shesurvived.surface import load_history

logger = logging.getLogger("shesurvived.api")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/login")

router = APIRouter(prefix="/api")


def get_services(request: Request) -> Services:
    return request.app.state.services


async def resolve_context(services: Services, token: str) -> ClientContext:
    payload = verify_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = payload.get("sub")
    context_id = payload.get("ctx")
    if user_id is None or context_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await services.repository.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return await services.context(context_id, user_id)


async def get_context(token: str = Depends(oauth2_scheme), services: Services = Depends(get_services)):
    return await resolve_context(services, token)


async def get_current_user(ctx: ClientContext = Depends(get_context)) -> User:
    user = await ctx.repository.get_user(ctx.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def issue_token(services: Services, context_id: str, user: User) -> Token:
    await services.context(context_id, user.id)
    access_token = create_access_token(data={"sub": user.id, "ctx": context_id})
    return Token(access_token=access_token, token_type="bearer", full_name=user.full_name, user_id=user.id)


@router.get("/health")
async def root():
    return {"message": "SheSurvived backend is running!"}


@router.post("/register", response_model=Token)
async def register_user(form: UserCreate, services: Services = Depends(get_services)):
    context_id = services.new_context_id()
    user = await AccountService(services.repository.bound(context_id)).register(form)
    return await issue_token(services, context_id, user)


@router.post("/login", response_model=Token)
async def login_user(login_data: UserLogin, services: Services = Depends(get_services)):
    context_id = services.new_context_id()
    user = await AccountService(services.repository.bound(context_id)).login(login_data.email, login_data.password)
    return await issue_token(services, context_id, user)


@router.post("/logout")
async def logout_user(ctx: ClientContext = Depends(get_context), services: Services = Depends(get_services)):
    await ctx.accounts.logout()
    await services.close_context(ctx.id)
    return {"status": "Logged out"}


# --- Profile & bracelet --- #

@router.get("/users/me/profile", response_model=UserPublic)
async def get_profile(current_user: User = Depends(get_current_user)):
    return UserPublic.from_user(current_user)


@router.put("/users/me/profile", response_model=UserPublic)
async def update_profile(changes: ProfileUpdate, ctx: ClientContext = Depends(get_context),
                         current_user: User = Depends(get_current_user)):
    return UserPublic.from_user(await ctx.accounts.update_profile(current_user, changes))


@router.post("/users/me/bracelet", response_model=UserPublic)
async def select_bracelet(selection: BraceletSelection, ctx: ClientContext = Depends(get_context),
                          current_user: User = Depends(get_current_user)):
    return UserPublic.from_user(await ctx.accounts.select_bracelet(current_user, selection.has_bracelet))


@router.post("/users/me/bracelet/verify", response_model=UserPublic)
async def verify_bracelet(body: BraceletVerification, ctx: ClientContext = Depends(get_context),
                          current_user: User = Depends(get_current_user)):
    if not current_user.has_bracelet:
        return RedirectResponse("/api/dashboard", status_code=303)
    return UserPublic.from_user(await ctx.accounts.verify_bracelet(current_user, body.code))


@router.post("/users/me/location")
async def update_location(location: LocationUpdate, ctx: ClientContext = Depends(get_context),
                          services: Services = Depends(get_services)):
    coords = (location.lat, location.lon)
    if isinstance(services.location_source, DeviceLocationSource):
        services.location_source.push(ctx.user_id, coords)
    await ctx.repository.put_location(ctx.user_id, coords)
    await ctx.controller.update_location(ctx.user_id, coords)
    return {"status": "Location updated"}


# --- Trusted contacts --- #

@router.get("/contacts", response_model=List[UserPublic])
async def list_contacts(ctx: ClientContext = Depends(get_context), current_user: User = Depends(get_current_user)):
    return [UserPublic.from_user(u) for u in await ctx.accounts.trusted_contacts(current_user)]


@router.get("/contacts/search", response_model=List[UserPublic])
async def search_contacts(q: str = "", ctx: ClientContext = Depends(get_context),
                          current_user: User = Depends(get_current_user)):
    return [UserPublic.from_user(u) for u in await ctx.accounts.search_users(current_user, q)]


@router.post("/contacts/{contact_id}", response_model=UserPublic)
async def add_contact(contact_id: str, ctx: ClientContext = Depends(get_context),
                      current_user: User = Depends(get_current_user)):
    user = await ctx.accounts.add_trusted_contact(current_user, contact_id)
    await ctx.surface.refresh()
    return UserPublic.from_user(user)


@router.delete("/contacts/{contact_id}", response_model=UserPublic)
async def remove_contact(contact_id: str, ctx: ClientContext = Depends(get_context),
                         current_user: User = Depends(get_current_user)):
    user = await ctx.accounts.remove_trusted_contact(current_user, contact_id)
    await ctx.surface.refresh()
    return UserPublic.from_user(user)


@router.get("/trusted-by", response_model=List[UserPublic])
async def list_trusted_by(ctx: ClientContext = Depends(get_context), current_user: User = Depends(get_current_user)):
    return [UserPublic.from_user(u) for u in await ctx.accounts.trusted_by(current_user)]


# --- Alarm --- #

async def alarm_status(ctx: ClientContext, user: User) -> AlarmStatus:
    record = await ctx.controller.current(user.id)
    elapsed = ctx.controller.elapsed(user.id)
    return AlarmStatus(
        state=alert_state(record).kind,
        alert=record,
        elapsed_seconds=elapsed,
        elapsed=format_elapsed(elapsed),
        recording=ctx.controller.recording(user.id),
        contacts_notified=len(user.trusted_contacts),
    )


def bracelet_redirect(user: User) -> Optional[RedirectResponse]:
    if not user.has_bracelet:
        return RedirectResponse("/api/dashboard", status_code=303)
    if not user.bracelet_verified:
        return RedirectResponse("/api/users/me/profile", status_code=303)
    return None


@router.get("/alarm", response_model=AlarmStatus)
async def get_alarm(ctx: ClientContext = Depends(get_context), current_user: User = Depends(get_current_user)):
    return bracelet_redirect(current_user) or await alarm_status(ctx, current_user)


@router.post("/alarm/trigger", response_model=AlarmStatus)
async def trigger_alarm(body: TriggerRequest, ctx: ClientContext = Depends(get_context),
                        current_user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    redirect = bracelet_redirect(current_user)
    if redirect is not None:
        return redirect
    if body.lat is not None and body.lon is not None:
        location = (body.lat, body.lon)
        if isinstance(services.location_source, SimulatedLocationSource):
            services.location_source.seed(current_user.id, location)
    else:
        location = await services.location_source.initial(current_user.id)
    await ctx.controller.trigger(current_user, location, doubt_mode=body.doubt_mode)
    return await alarm_status(ctx, current_user)


@router.post("/alarm/cancel", response_model=AlarmStatus)
async def cancel_alarm(body: CancelRequest, ctx: ClientContext = Depends(get_context),
                       current_user: User = Depends(get_current_user)):
    await ctx.controller.cancel(current_user, body.was_real_emergency, body.emergency_type)
    return await alarm_status(ctx, current_user)


@router.put("/alarm/stream", response_model=AlarmStatus)
async def toggle_stream(body: StreamToggle, ctx: ClientContext = Depends(get_context),
                        current_user: User = Depends(get_current_user)):
    await ctx.controller.set_live_stream(current_user.id, body.active)
    return await alarm_status(ctx, current_user)


@router.post("/alarm/audio")
async def upload_audio_chunk(body: AudioChunkUpload, ctx: ClientContext = Depends(get_context),
                             services: Services = Depends(get_services)):
    record = await ctx.controller.current(ctx.user_id)
    if record is None or not record.active:
        raise HTTPException(status_code=400, detail="No active alert to attach audio to.")
    if isinstance(services.audio_source, DeviceAudioSource):
        services.audio_source.push(ctx.user_id, body.chunk_id)
        return {"status": "Chunk queued"}
    record = await ctx.controller.append_chunk(ctx.user_id, body.chunk_id)
    if record is None:
        raise HTTPException(status_code=400, detail="No active alert to attach audio to.")
    return {"status": "Chunk stored", "chunks": len(record.audio_chunks)}


@router.post("/tracking/start")
async def start_tracking(ctx: ClientContext = Depends(get_context)):
    ctx.tracker.start()
    return {"tracking": ctx.tracker.tracking}


@router.post("/tracking/stop")
async def stop_tracking(ctx: ClientContext = Depends(get_context)):
    await ctx.tracker.stop()
    return {"tracking": ctx.tracker.tracking}


# --- Contacts' alerts --- #

@router.get("/dashboard", response_model=DashboardView)
async def get_dashboard(ctx: ClientContext = Depends(get_context)):
    await ctx.surface.refresh()
    return ctx.surface.view()


@router.post("/dashboard/{user_id}/dismiss", response_model=DashboardView)
async def dismiss_notification(user_id: str, ctx: ClientContext = Depends(get_context)):
    await ctx.surface.dismiss_and_sync(user_id)
    return ctx.surface.view()


@router.post("/dashboard/mute", response_model=DashboardView)
async def mute_alarm(ctx: ClientContext = Depends(get_context)):
    await ctx.surface.mute()
    return ctx.surface.view()


@router.post("/dashboard/unmute", response_model=DashboardView)
async def unmute_alarm(ctx: ClientContext = Depends(get_context)):
    await ctx.surface.unmute()
    return ctx.surface.view()


@router.get("/emergencies/{user_id}/track", response_model=TrackingView)
async def track_emergency(user_id: str, ctx: ClientContext = Depends(get_context)):
    return await ctx.surface.track(user_id)


@router.post("/emergencies/{user_id}/call")
async def call_contact(user_id: str, ctx: ClientContext = Depends(get_context)):
    phone_number = await ctx.surface.call(user_id)
    return {"phone_number": phone_number, "status": "Calling is not available yet"}


@router.get("/history", response_model=HistoryView)
async def get_history(ctx: ClientContext = Depends(get_context)):
    return await load_history(ctx.repository, ctx.user_id)


@router.get("/safe-walk", response_model=SafeWalkView)
async def get_safe_walk(lat: float = config.DEFAULT_LOCATION[0], lon: float = config.DEFAULT_LOCATION[1],
                        ctx: ClientContext = Depends(get_context)):
    return safe_walk_view((lat, lon))


@router.websocket("/changes")
async def change_feed(websocket: WebSocket, token: str = Query(...)):
    services: Services = websocket.app.state.services
    try:
        ctx = await resolve_context(services, token)
    except HTTPException:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    ctx.connections += 1

    async def forward(event):
        await websocket.send_json({"key": event.key, "newValue": event.new_value})

    subscription = services.bus.subscribe(ANY_KEY, forward, context=ctx.id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Change feed for context {ctx.id} disconnected")
    finally:
        subscription.unsubscribe()
        ctx.connections -= 1
        ctx.last_used = services.clock()


def create_app(services: Optional[Services] = None) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.services.startup()
        yield
        await app.state.services.shutdown()

    app = FastAPI(title="SheSurvived API", lifespan=lifespan)
    app.state.services = services or Services()

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request, exc):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RecordNotFound)
    async def not_found_handler(request, exc):
        logger.info(f"{exc}; redirecting to {exc.redirect_to}")
        return RedirectResponse(exc.redirect_to, status_code=303)

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.exception("Unhandled error")
        content = {"detail": "Internal Server Error"}
        if config.DEBUG:
            content["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=content)

    # Setup CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict this to the web client's domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
