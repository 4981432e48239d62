import logging
from contextlib import asynccontextmanager
from datetime import date
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import select
from medtrack.config import get_settings
from medtrack.database import engine, Base, async_session
from medtrack.exceptions import MedTrackError
from medtrack.routers import appointments, doctors, sessions, users

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def seed_demo_users():
    """Create demo doctors and a demo patient if they don't exist. Idempotent."""
    from medtrack.models.user import User
    from medtrack.services.directory_service import directory_service

    demo_doctors = [
        ("ayse.demir@medtrack.local", "Ayse", "Demir", "Cardiology"),
        ("mehmet.kaya@medtrack.local", "Mehmet", "Kaya", "Dermatology"),
        ("zeynep.arslan@medtrack.local", "Zeynep", "Arslan", "Eye"),
        ("can.yildiz@medtrack.local", "Can", "Yildiz", "General_Surgery"),
    ]

    async with async_session() as session:
        for email, name, surname, specialty in demo_doctors:
            if not await session.scalar(select(User.id).where(User.email == email)):
                await directory_service.register_doctor(
                    email=email,
                    password="doctor123",
                    name=name,
                    surname=surname,
                    birth_date=date(1980, 5, 17),
                    specialty=specialty,
                    db=session,
                )
        if not await session.scalar(select(User.id).where(User.email == "patient@medtrack.local")):
            await directory_service.register_patient(
                email="patient@medtrack.local",
                password="patient123",
                name="Elif",
                surname="Sahin",
                birth_date=date(1995, 2, 3),
                db=session,
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create tables, optionally seed demo users
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.debug:
        await seed_demo_users()
    logger.info(f"{settings.app_name} ready")
    yield
    # Shutdown
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Doctor appointment scheduling with conflict-checked booking and server-side sessions",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class NoCacheMiddleware(BaseHTTPMiddleware):
    """Appointment state is server-owned; keep browsers from caching it."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate, max-age=0"
        response.headers["Expires"] = "0"
        response.headers["Pragma"] = "no-cache"
        return response


app.add_middleware(NoCacheMiddleware)


@app.exception_handler(MedTrackError)
async def medtrack_error_handler(request: Request, exc: MedTrackError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "Internal server error",
            "details": {"detail": str(exc)} if settings.debug else {},
        },
    )


app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(doctors.router, prefix="/api/doctors", tags=["Doctors"])
app.include_router(appointments.router, prefix="/api/appointments", tags=["Appointments"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "medtrack-scheduling"}
