"""
Database Schemas

Pydantic models that define the MongoDB collections of the alumni records
system. Documents are stored with camelCase keys, which are also the keys
used on the wire; attributes are snake_case with camelCase aliases.

Guiding principles:
- registrationNumber is the natural key of an alumni record and is unique
- every stored alumni record carries all nested sections with every leaf key
- passwords are stored as bcrypt hashes and never leave the accounts layer
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------------------- Alumni -------------------------------

class ContactDetails(CamelModel):
    email: str = ""
    phone: str = ""
    address: str = ""


class QualifiedExams(CamelModel):
    exam_name: str = ""
    roll_number: str = ""
    certificate_url: str = Field("", description="Uploaded certificate URL")


class Employment(CamelModel):
    type: str = Field("", description="Employed, Self-Employed, Unemployed, ...")
    employer_name: str = ""
    employer_contact: str = ""
    employer_email: str = ""
    document_url: str = ""
    self_employment_details: str = ""


class HigherEducation(CamelModel):
    institution_name: str = ""
    program_name: str = ""
    document_url: str = ""


class AlumniRecord(CamelModel):
    """
    Alumni profile
    Collection: "alumni"
    """
    id: str = Field(..., description="ObjectId of the record as string")
    name: str
    academic_unit: str = ""
    program: str
    passing_year: str = Field(..., description="Passing year, e.g. 2019-20")
    registration_number: str = Field(..., description="Unique registration number")
    contact_details: ContactDetails = Field(default_factory=ContactDetails)
    qualified_exams: QualifiedExams = Field(default_factory=QualifiedExams)
    employment: Employment = Field(default_factory=Employment)
    higher_education: HigherEducation = Field(default_factory=HigherEducation)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class AlumniPage(CamelModel):
    data: List[AlumniRecord]
    pagination: Pagination


class AlumniStats(CamelModel):
    total_alumni: int
    by_academic_unit: Dict[str, int]
    by_passing_year: Dict[str, int]
    employment_rate: int
    higher_education_rate: int


# ------------------------------ Settings ------------------------------

class NotificationSettings(CamelModel):
    email: bool = True
    browser: bool = False


class PrivacySettings(CamelModel):
    show_email: bool = False
    show_profile: bool = True


class AppearanceSettings(CamelModel):
    theme: Literal["light", "dark", "system"] = "system"
    font_size: Literal["small", "medium", "large"] = "medium"


class UserSettings(CamelModel):
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)
    appearance: AppearanceSettings = Field(default_factory=AppearanceSettings)


class UserSettingsRecord(UserSettings):
    """
    Per-user preferences
    Collection: "settings" (one document per userId)
    """
    id: str
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ------------------------------- Users --------------------------------

class User(CamelModel):
    """
    Account (password hash is stored but never exposed)
    Collection: "users"
    """
    id: str
    name: str
    email: str
    role: Literal["admin", "user"] = "user"
    settings: UserSettings = Field(default_factory=UserSettings)


class AuthResponse(User):
    token: str


# ---------------------------- Lookup data -----------------------------

class AcademicUnit(CamelModel):
    """
    School or department a program belongs to
    Collection: "academic_units"
    """
    id: str
    name: str = Field(..., description="Unique unit name")
    short_name: str
    description: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContactMessage(CamelModel):
    """
    Message submitted through the public contact form
    Collection: "contacts"
    """
    id: str
    name: str
    email: str
    subject: str
    message: str
    created_at: Optional[datetime] = None
