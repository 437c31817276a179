from .base import Base

# Competition structure
from .competition import Competition, CompetitionStatus
from .participant import Participant, Judge, Voter, VoterType
from .category import Category, ParticipantCategory

# Scoring
from .scoring import Rubric, Criterion, ScoreFact, CombinationPolicy

# Permissions
from .permissions import Admin, AdminRole, GlobalPermissionGrant, CompetitionPermissionGrant

# Reports
from .report import ReportDefinition, SortOption, ReportSortOption, SortDirection

# Automation
from .automation import AutomationRule, AutomationRuleState, AutomationAuditLog
