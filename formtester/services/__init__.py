from .cron import derive_cron_expression, estimate_next_run_time, is_valid_cron_expression, validate_frequency
from .screenshots import ScreenshotStore, LocalScreenshotStore, S3ScreenshotStore, get_screenshot_store
from .timer_rules import TimerRuleAdapter, APSchedulerRuleAdapter, EventBridgeRuleAdapter, get_timer_adapter
from .runner import FormTestRunner, cleanup_interrupted_runs
from .schedule import ScheduleService
from .history import HistoryService
from .analytics import AnalyticsService
from .discovery import FieldDiscoveryService
from .scheduler import SchedulerService
