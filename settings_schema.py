from pydantic import BaseModel, Field, ValidationError

class SettingsSchema(BaseModel):
    db_path: str = "workout.db"
    debounce_ms: int = Field(500, ge=0)
    tick_interval: float = Field(1.0, gt=0)
    history_limit: int = Field(50, gt=0)
    weight_history_limit: int = Field(100, gt=0)
    trend_months: int = Field(3, gt=0)
    weight_unit: str = "lbs"
    seed_exercises: bool = True
    log_level: str = "INFO"

def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
