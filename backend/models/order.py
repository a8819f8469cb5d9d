from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import datetime


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TrackingActivity(BaseModel):
    date: Optional[str] = None
    status: Optional[str] = None
    activity: Optional[str] = None
    location: Optional[str] = None


class TrackingResponse(BaseModel):
    current_status: str
    system_status: str
    notification_type: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    etd: Optional[str] = None
    track_url: Optional[str] = None
    delivered_date: Optional[datetime] = None
    pickup_date: Optional[datetime] = None
    activities: List[TrackingActivity] = []
    notified: bool = False


TrackingLookup = Literal["awb", "shipment", "order"]
