from sqlmodel import Session
from formtester.core.database import engine
from formtester.core.config import get_settings
from typing import Generator
from fastapi import Depends
from formtester.services import (
    AnalyticsService,
    FieldDiscoveryService,
    FormTestRunner,
    HistoryService,
    ScheduleService,
    ScreenshotStore,
    TimerRuleAdapter,
    get_screenshot_store,
    get_timer_adapter,
)

def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session

def get_screenshots() -> ScreenshotStore:
    return get_screenshot_store(get_settings())

def get_timer() -> TimerRuleAdapter:
    return get_timer_adapter(get_settings())

def get_schedule_service(
    db: Session = Depends(get_db),
    timer: TimerRuleAdapter = Depends(get_timer),
) -> ScheduleService:
    return ScheduleService(db, timer)

def get_runner(
    db: Session = Depends(get_db),
    screenshots: ScreenshotStore = Depends(get_screenshots),
) -> FormTestRunner:
    return FormTestRunner(db, screenshots)

def get_history_service(
    db: Session = Depends(get_db),
    screenshots: ScreenshotStore = Depends(get_screenshots),
) -> HistoryService:
    return HistoryService(db, screenshots)

def get_analytics_service(db: Session = Depends(get_db)) -> AnalyticsService:
    return AnalyticsService(db)

def get_field_discovery() -> FieldDiscoveryService:
    return FieldDiscoveryService()
