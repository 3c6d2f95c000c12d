import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

import accounts
import database
from alumni_store import AlumniStore, object_id, serialize
from config import settings
from database import ACADEMIC_UNITS, CONTACTS, USERS, create_document, ensure_indexes, get_db, get_documents
from exceptions import (
    AlumniRecordsError,
    DuplicateRecordError,
    ResourceNotFoundError,
    ValidationError,
    error_response,
)
from logging_config import logger
from middleware import RequestLoggingMiddleware
from schemas import (
    AcademicUnit,
    AlumniPage,
    AlumniRecord,
    AlumniStats,
    AuthResponse,
    ContactMessage,
    User,
    UserSettingsRecord,
)
from security import get_current_user, require_admin
from storage import FileStorage, get_storage


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        # unique indexes back every uniqueness rule; refuse to serve without them
        try:
            await run_in_threadpool(ensure_indexes, database.db)
        except PyMongoError as e:
            logger.critical(f"Could not create indexes, aborting startup: {e}")
            raise
        logger.info(f"MongoDB ready: {database.db.name}")
    yield
    if database.client is not None:
        database.client.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

if settings.STORAGE_BACKEND == "local":
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


# ------------------------------ Error handlers ------------------------------

@app.exception_handler(AlumniRecordsError)
async def alumni_records_error_handler(request: Request, exc: AlumniRecordsError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}",
                     extra={"error_details": exc.details})
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc, expose_internal=settings.DEBUG),
    )


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.log_error_with_context(exc, context=f"{request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc) if settings.DEBUG else "Internal server error",
            "code": "STORAGE_ERROR",
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred",
        },
    )


# --------- Pydantic request models (separate from DB schemas) ---------

class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              str_strip_whitespace=True)


class RegisterRequest(RequestModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateRequest(RequestModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class PasswordChangeRequest(RequestModel):
    current_password: str = Field(..., min_length=1)
    new_password: str


class NotificationsPatch(RequestModel):
    email: Optional[bool] = None
    browser: Optional[bool] = None


class PrivacyPatch(RequestModel):
    show_email: Optional[bool] = None
    show_profile: Optional[bool] = None


class AppearancePatch(RequestModel):
    theme: Optional[Literal["light", "dark", "system"]] = None
    font_size: Optional[Literal["small", "medium", "large"]] = None


class SettingsPatch(RequestModel):
    notifications: Optional[NotificationsPatch] = None
    privacy: Optional[PrivacyPatch] = None
    appearance: Optional[AppearancePatch] = None


class AuthSettingsRequest(RequestModel):
    settings: SettingsPatch = Field(default_factory=SettingsPatch)


class AcademicUnitCreate(RequestModel):
    name: str = Field(..., min_length=1)
    short_name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class AcademicUnitUpdate(RequestModel):
    name: Optional[str] = None
    short_name: Optional[str] = None
    description: Optional[str] = None


class ContactRequest(RequestModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


# ---------------------------- Utility functions ----------------------------

def get_alumni_store(db: Database = Depends(get_db)) -> AlumniStore:
    return AlumniStore(db)


async def read_alumni_request(request: Request) -> Tuple[Dict[str, Any], Dict[str, UploadFile]]:
    """
    Read an alumni payload from a JSON body or a multipart/urlencoded form.
    Form values are strings (nested sections JSON-encoded); files are split out.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        payload: Dict[str, Any] = {}
        files: Dict[str, UploadFile] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                files[key] = value
            else:
                payload[key] = value
        return payload, files

    raw = await request.body()
    if not raw.strip():
        return {}, {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON or multipart form data")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body, {}


def to_public_unit(doc: Dict[str, Any]) -> AcademicUnit:
    return AcademicUnit.model_validate(serialize(doc))


def load_academic_unit(db: Database, unit_id: str) -> Dict[str, Any]:
    oid = object_id(unit_id)
    doc = db[ACADEMIC_UNITS].find_one({"_id": oid}) if oid else None
    if not doc:
        raise ResourceNotFoundError("Academic unit", unit_id)
    return doc


# --------------------------------- Routes ---------------------------------

@app.get("/", tags=["system"])
def read_root():
    return {"message": f"{settings.APP_NAME} is running"}


@app.get("/health", tags=["system"])
def health_check():
    response = {
        "status": "ok",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "storage_backend": settings.STORAGE_BACKEND,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    db = database.db
    if db is None:
        response["database"] = "⚠️  Available but not initialized"
        return response

    response["database"] = "✅ Available"
    response["database_name"] = db.name
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["status"] = "degraded"
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ---- Auth ----

@app.get("/api/auth/health", tags=["auth"])
def auth_health():
    return {"status": "ok", "message": "Auth service is running"}


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    return accounts.register_user(db, payload.name, payload.email, payload.password)


@app.post("/api/auth/login", response_model=AuthResponse, tags=["auth"])
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    return accounts.authenticate_user(db, payload.email, payload.password)


@app.get("/api/auth/profile", response_model=User, tags=["auth"])
def get_profile(user: Dict[str, Any] = Depends(get_current_user)):
    return accounts.public_user(user)


@app.put("/api/auth/profile", response_model=AuthResponse, tags=["auth"])
def update_profile(payload: ProfileUpdateRequest, user: Dict[str, Any] = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    return accounts.update_profile(db, user, payload.name, payload.email, payload.password)


@app.put("/api/auth/password", response_model=MessageResponse, tags=["auth"])
def change_password(payload: PasswordChangeRequest, user: Dict[str, Any] = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    accounts.change_password(db, user, payload.current_password, payload.new_password)
    return MessageResponse(message="Password updated successfully")


@app.put("/api/auth/settings", response_model=User, tags=["auth"])
def update_auth_settings(payload: AuthSettingsRequest, user: Dict[str, Any] = Depends(get_current_user),
                         db: Database = Depends(get_db)):
    patch = payload.settings.model_dump(by_alias=True, exclude_none=True)
    accounts.update_user_settings(db, user["_id"], patch)
    return accounts.public_user(db[USERS].find_one({"_id": user["_id"]}))


# ---- Settings ----

@app.get("/api/settings", response_model=UserSettingsRecord, tags=["settings"])
def get_settings(user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    return accounts.get_user_settings(db, user["_id"])


@app.put("/api/settings", response_model=UserSettingsRecord, tags=["settings"])
def update_settings(payload: SettingsPatch, user: Dict[str, Any] = Depends(get_current_user),
                    db: Database = Depends(get_db)):
    patch = payload.model_dump(by_alias=True, exclude_none=True)
    return accounts.update_user_settings(db, user["_id"], patch)


# ---- Alumni ----

@app.get("/api/alumni", response_model=AlumniPage, tags=["alumni"])
def list_alumni(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    academic_unit: Optional[str] = Query(None, alias="academicUnit"),
    passing_year: Optional[str] = Query(None, alias="passingYear"),
    program: Optional[str] = Query(None),
    store: AlumniStore = Depends(get_alumni_store),
):
    return store.list_alumni(academic_unit=academic_unit, passing_year=passing_year,
                             program=program, page=page, page_size=limit)


@app.get("/api/alumni/search", response_model=List[AlumniRecord], tags=["alumni"])
def search_alumni(
    query: Optional[str] = Query(None),
    academic_unit: Optional[str] = Query(None, alias="academicUnit"),
    _user: Dict[str, Any] = Depends(get_current_user),
    store: AlumniStore = Depends(get_alumni_store),
):
    return store.search_alumni(query, academic_unit=academic_unit)


@app.get("/api/alumni/stats", response_model=AlumniStats, tags=["alumni"])
def alumni_stats(_user: Dict[str, Any] = Depends(get_current_user),
                 store: AlumniStore = Depends(get_alumni_store)):
    return store.alumni_stats()


@app.get("/api/alumni/{alumni_id}", response_model=AlumniRecord, tags=["alumni"])
def get_alumni(alumni_id: str, _user: Dict[str, Any] = Depends(get_current_user),
               store: AlumniStore = Depends(get_alumni_store)):
    return store.get_alumni(alumni_id)


@app.post("/api/alumni", response_model=AlumniRecord, status_code=201, tags=["alumni"])
async def create_alumni(
    request: Request,
    user: Dict[str, Any] = Depends(get_current_user),
    store: AlumniStore = Depends(get_alumni_store),
    storage: FileStorage = Depends(get_storage),
):
    payload, files = await read_alumni_request(request)
    # reject bad input before anything is uploaded
    store.validate_new(payload)
    uploaded = await run_in_threadpool(storage.upload_attachments, files)
    return await run_in_threadpool(store.create_alumni, payload, uploaded, str(user["_id"]))


@app.put("/api/alumni/{alumni_id}", response_model=AlumniRecord, tags=["alumni"])
async def update_alumni(
    alumni_id: str,
    request: Request,
    _user: Dict[str, Any] = Depends(get_current_user),
    store: AlumniStore = Depends(get_alumni_store),
    storage: FileStorage = Depends(get_storage),
):
    payload, files = await read_alumni_request(request)
    store.validate_changes(payload)
    await run_in_threadpool(store.get_alumni, alumni_id)
    uploaded = await run_in_threadpool(storage.upload_attachments, files)
    return await run_in_threadpool(store.update_alumni, alumni_id, payload, uploaded)


@app.delete("/api/alumni/{alumni_id}", response_model=MessageResponse, tags=["alumni"])
def delete_alumni(alumni_id: str, _admin: Dict[str, Any] = Depends(require_admin),
                  store: AlumniStore = Depends(get_alumni_store)):
    store.delete_alumni(alumni_id)
    return MessageResponse(message="Alumni removed")


# ---- Academic units ----

@app.get("/api/academic-units", response_model=List[AcademicUnit], tags=["academic-units"])
def list_academic_units(_user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    docs = get_documents(db, ACADEMIC_UNITS, sort=[("name", 1)])
    return [to_public_unit(d) for d in docs]


@app.get("/api/academic-units/{unit_id}", response_model=AcademicUnit, tags=["academic-units"])
def get_academic_unit(unit_id: str, _user: Dict[str, Any] = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    return to_public_unit(load_academic_unit(db, unit_id))


@app.post("/api/academic-units", response_model=AcademicUnit, status_code=201, tags=["academic-units"])
def create_academic_unit(payload: AcademicUnitCreate, _admin: Dict[str, Any] = Depends(require_admin),
                         db: Database = Depends(get_db)):
    if db[ACADEMIC_UNITS].find_one({"name": payload.name}):
        raise DuplicateRecordError("Academic unit already exists", field="name", value=payload.name)
    try:
        doc = create_document(db, ACADEMIC_UNITS, payload)
    except DuplicateKeyError:
        raise DuplicateRecordError("Academic unit already exists", field="name", value=payload.name)
    logger.info(f"Created academic unit {payload.name}")
    return to_public_unit(doc)


@app.put("/api/academic-units/{unit_id}", response_model=AcademicUnit, tags=["academic-units"])
def update_academic_unit(unit_id: str, payload: AcademicUnitUpdate,
                         _admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    doc = load_academic_unit(db, unit_id)
    changes = {k: v for k, v in payload.model_dump(by_alias=True).items() if v}

    new_name = changes.get("name")
    if new_name and new_name != doc.get("name"):
        if db[ACADEMIC_UNITS].find_one({"name": new_name, "_id": {"$ne": doc["_id"]}}):
            raise DuplicateRecordError("Academic unit already exists", field="name", value=new_name)

    changes["updatedAt"] = datetime.now(timezone.utc)
    try:
        db[ACADEMIC_UNITS].update_one({"_id": doc["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise DuplicateRecordError("Academic unit already exists", field="name", value=new_name)
    return to_public_unit({**doc, **changes})


@app.delete("/api/academic-units/{unit_id}", response_model=MessageResponse, tags=["academic-units"])
def delete_academic_unit(unit_id: str, _admin: Dict[str, Any] = Depends(require_admin),
                         db: Database = Depends(get_db)):
    doc = load_academic_unit(db, unit_id)
    db[ACADEMIC_UNITS].delete_one({"_id": doc["_id"]})
    return MessageResponse(message="Academic unit removed")


# ---- Contact ----

@app.post("/api/contact", status_code=201, tags=["contact"])
def send_contact_message(payload: ContactRequest, db: Database = Depends(get_db)):
    create_document(db, CONTACTS, {
        "name": payload.name,
        "email": payload.email,
        "subject": payload.subject,
        "message": payload.message,
    })
    return {"success": True, "message": "Contact message received successfully"}


@app.get("/api/contact", response_model=List[ContactMessage], tags=["contact"])
def get_contact_messages(_admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    docs = get_documents(db, CONTACTS, sort=[("createdAt", -1)])
    return [ContactMessage.model_validate(serialize(d)) for d in docs]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
