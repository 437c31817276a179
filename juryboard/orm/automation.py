"""
juryboard/orm/automation.py
Automation rule definitions, their runtime state, and the audit channel
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey
from juryboard.orm.base import Base, BaseModel, UniversalJSON


class AutomationRule(BaseModel):
    """
    Stateless trigger/action definition.

    trigger_config / action_config are tagged variants whose "type" must
    equal trigger_type / action_type (validated on write).
    """
    __tablename__ = "automation_rules"

    competition_id = Column(Integer, ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    trigger_type = Column(String(50), nullable=False, index=True)
    trigger_config = Column(UniversalJSON, nullable=False)
    action_type = Column(String(50), nullable=False)
    action_config = Column(UniversalJSON, nullable=False)

    enabled = Column(Boolean, default=True, nullable=False)
    created_by = Column(Integer, ForeignKey("admins.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "competition_id": self.competition_id,
            "name": self.name,
            "trigger_type": self.trigger_type,
            "trigger_config": self.trigger_config,
            "action_type": self.action_type,
            "action_config": self.action_config,
            "enabled": self.enabled,
        }


class AutomationRuleState(Base):
    """Evaluation state kept outside the rule's identity."""
    __tablename__ = "automation_rule_states"

    rule_id = Column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), primary_key=True)
    last_evaluated_at = Column(DateTime, nullable=True)
    last_fired_at = Column(DateTime, nullable=True)
    fire_count = Column(Integer, default=0, nullable=False)
    last_status = Column(String(30), nullable=True)
    last_error = Column(Text, nullable=True)


class AutomationAuditLog(Base):
    """Append-only record of fired and failed rule evaluations."""
    __tablename__ = "automation_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    competition_id = Column(Integer, nullable=False, index=True)
    status = Column(String(30), nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
