from crm_triggers.crm.automation.dispatcher import HANDLERS, OpportunityTriggerDispatcher, pair_changes
from crm_triggers.crm.automation.lookups import LookupCache
from crm_triggers.crm.automation.phases import RecordChange, Rule, RuleKind, TriggerContext, TriggerPhase

__all__ = [
    "HANDLERS",
    "LookupCache",
    "OpportunityTriggerDispatcher",
    "RecordChange",
    "Rule",
    "RuleKind",
    "TriggerContext",
    "TriggerPhase",
    "pair_changes",
]
