from .form import FieldType, FormField, FormConfig, SuccessIndicator
from .schedule import ScheduleCreate, ScheduleUpdate, ScheduleRead, ScheduleSummary, ActiveToggle
from .test_run import RunTestRequest, RunTestResponse, TestRunRead, TestRunSummary
