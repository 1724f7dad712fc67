from typing import Optional

from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    data_dir: Optional[str] = None
    state_filename: str = "training-state.json"
    background_saves: bool = True
    gps_queue_size: int = Field(default=1024, ge=1)
    max_gps_accuracy_m: float = Field(default=50.0, gt=0)
    max_gps_jump_m: float = Field(default=500.0, gt=0)
    log_level: str = "INFO"


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
