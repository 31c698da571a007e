from changeflow.agents.base import AgentResponse, RoleAgent, extract_json_objects
from changeflow.agents.ci_watcher import CIWatcherAgent
from changeflow.agents.implementer import ImplementerAgent, plan_deviation
from changeflow.agents.planner import Discovery, PlannerAgent, parse_plan, parse_questions
from changeflow.agents.reviewer import ReviewerAgent, SpecialistReviewer

__all__ = [
    "AgentResponse",
    "CIWatcherAgent",
    "Discovery",
    "ImplementerAgent",
    "PlannerAgent",
    "ReviewerAgent",
    "RoleAgent",
    "SpecialistReviewer",
    "extract_json_objects",
    "parse_plan",
    "parse_questions",
    "plan_deviation",
]
