from pydantic import BaseModel, ConfigDict
from typing import Optional


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str

class OnlineUsersResponse(BaseModel):
    users: list[Identity]
    online_count: int
    excluding: Optional[str] = None
