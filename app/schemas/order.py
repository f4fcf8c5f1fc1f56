"""
Pydantic schemas for order requests
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Any
from datetime import datetime
import re

from app.services.order_status import ORDER_STATUSES, GROUP_STATUSES


class CamelModel(BaseModel):
    """Accept both the camelCase wire names and the python field names"""

    class Config:
        populate_by_name = True

    def to_payload(self) -> dict:
        return self.dict(by_alias=True, exclude_none=True)


class MedicationIn(CamelModel):
    """One medication line"""
    name: str = Field(..., min_length=1, max_length=255, description="Medication name")
    quantity: str = Field(..., min_length=1, max_length=50, description="Quantity to supply")
    form: Optional[str] = Field(None, max_length=100, description="Formulation, e.g. tablets")
    strength: Optional[str] = Field(None, max_length=100)
    dose: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None

    @validator('quantity', pre=True)
    def quantity_as_text(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class RequesterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    role: str = Field(..., min_length=1, max_length=50)


class PatientIn(CamelModel):
    """Patient details; name and dob are encrypted at rest"""
    name: str = Field(..., min_length=1, max_length=200)
    dob: Optional[str] = Field(None, description="Date of birth (YYYY-MM-DD or DD/MM/YYYY)")
    nhs: Optional[str] = Field(None, max_length=20, description="NHS number")
    hospital_id: Optional[str] = Field(None, alias="hospitalId", max_length=50)

    @validator('dob')
    def validate_date_of_birth(cls, v):
        if v is None:
            return v

        date_patterns = [
            r'^\d{4}-\d{2}-\d{2}$',
            r'^\d{1,2}/\d{1,2}/\d{4}$',
        ]

        if not any(re.match(pattern, v) for pattern in date_patterns):
            raise ValueError('Date of birth must be in format YYYY-MM-DD or DD/MM/YYYY')

        return v


class OrderCreate(CamelModel):
    """Schema for creating a new order"""
    id: Optional[str] = Field(None, max_length=64, description="Client-generated order id")
    type: str = Field(..., description="patient or ward-stock")
    ward_id: int = Field(..., alias="wardId", gt=0)
    medications: List[MedicationIn] = Field(..., min_length=1)
    requester: RequesterIn
    patient: Optional[PatientIn] = None
    notes: Optional[str] = None
    urgency: Optional[str] = Field("routine", description="routine, urgent or emergency")
    timestamp: Optional[datetime] = None
    is_duplicate: Optional[bool] = Field(None, alias="isDuplicate")

    @validator('type')
    def validate_type(cls, v):
        if v not in ('patient', 'ward-stock'):
            raise ValueError('Order type must be patient or ward-stock')
        return v

    @validator('urgency')
    def validate_urgency(cls, v):
        if v is not None and v not in ('routine', 'urgent', 'emergency'):
            raise ValueError('Urgency must be one of: routine, urgent, emergency')
        return v

    @validator('patient', always=True)
    def patient_required_for_patient_orders(cls, v, values, **kwargs):
        if values.get('type') == 'patient':
            if v is None or not v.hospital_id:
                raise ValueError('Patient name and hospitalId are required for patient orders')
        return v


class OrderUpdate(CamelModel):
    """Schema for updating status and processing details"""
    status: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = Field(None, alias="processedBy", max_length=100)
    checked_by: Optional[str] = Field(None, alias="checkedBy", max_length=100)
    processing_notes: Optional[str] = Field(None, alias="processingNotes")
    dispensary_id: Optional[Any] = Field(None, alias="dispensaryId")
    reason: Optional[str] = None

    @validator('status')
    def validate_status(cls, v):
        if v is None:
            return v
        if v not in ORDER_STATUSES:
            raise ValueError(f'Status must be one of: {", ".join(ORDER_STATUSES)}')
        return v


class OrderCancel(CamelModel):
    reason: str = Field(..., min_length=1)
    cancelled_by: Optional[str] = Field(None, alias="cancelledBy")
    timestamp: Optional[datetime] = None


class MedicationsReplace(CamelModel):
    medications: List[MedicationIn]
    modified_by: Optional[str] = Field(None, alias="modifiedBy")
    reason: str = Field(..., min_length=1)
    timestamp: Optional[datetime] = None


class MedicationAdd(CamelModel):
    medication: MedicationIn
    modified_by: Optional[str] = Field(None, alias="modifiedBy")
    reason: str = Field(..., min_length=1)
    timestamp: Optional[datetime] = None


class RecentCheckPatient(CamelModel):
    name: Optional[str] = None
    nhs_number: Optional[str] = Field(None, alias="nhsNumber")
    hospital_number: Optional[str] = Field(None, alias="hospitalNumber")
    ward_id: Optional[int] = Field(None, alias="wardId")
    type: Optional[str] = None


class RecentCheckMedication(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)

    @validator('name', pre=True)
    def name_as_text(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class RecentCheckRequest(BaseModel):
    """Duplicate check for a patient or a ward"""
    patient: RecentCheckPatient
    medications: List[RecentCheckMedication] = Field(default_factory=list)


class OrderGroupCreate(CamelModel):
    order_ids: List[str] = Field(..., alias="orderIds", min_length=1)
    group_number: str = Field(..., alias="groupNumber", min_length=1, max_length=50)
    notes: Optional[str] = None
    status: Optional[str] = None

    @validator('status')
    def validate_status(cls, v):
        if v is None:
            return v
        if v not in GROUP_STATUSES:
            raise ValueError(f'Group status must be one of: {", ".join(GROUP_STATUSES)}')
        return v
