from typing import Optional

from pydantic import BaseModel

class NotificationRecord(BaseModel):
    notification_id: str
    contact: str
    message: str
    kind: Optional[str] = None
    status: str
    delivery_time: str
