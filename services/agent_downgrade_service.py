"""
Agent Downgrade Service
When a subscription ends, agents configured with pro-tier models are moved to
the default free-tier model. Missing free-tier configuration is an operator
problem and is raised, never absorbed.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from models import Agent, LlmModel, PlanTier
from services.domain_events import DomainEventBus, OperatorAlert, domain_event_bus
from utils.reconciliation_errors import ConfigurationError

logger = logging.getLogger(__name__)


class AgentDowngradeService:
    """Migrates a user's agents off tier-restricted models"""

    def __init__(self, event_bus: Optional[DomainEventBus] = None):
        self._event_bus = event_bus or domain_event_bus

    @staticmethod
    def get_default_free_model(session: Session) -> Optional[LlmModel]:
        return session.execute(
            select(LlmModel)
            .where(LlmModel.tier == PlanTier.FREE.value, LlmModel.is_active.is_(True))
            .order_by(LlmModel.sort_order, LlmModel.name)
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _premium_agents(session: Session, user_id: int) -> List[Agent]:
        premium_ids = set(
            session.execute(select(LlmModel.id).where(LlmModel.tier == PlanTier.PRO.value)).scalars()
        )
        if not premium_ids:
            return []
        agents = session.execute(select(Agent).where(Agent.user_id == user_id)).scalars()
        # The model can live on the column, in config, or both
        return [
            agent for agent in agents
            if agent.llm_model in premium_ids or (agent.config or {}).get("model") in premium_ids
        ]

    def downgrade_user_agents(self, session: Session, user_id: int) -> int:
        """
        Rewrite every premium-model agent of `user_id` to the default free model.

        Returns the number of agents migrated. Raises ConfigurationError when
        agents need migrating but no active free-tier model exists; the alert is
        sent immediately because the surrounding transaction will roll back.
        """
        agents = self._premium_agents(session, user_id)
        if not agents:
            return 0

        free_model = self.get_default_free_model(session)
        if free_model is None:
            message = (
                f"No active free-tier LLM model configured; cannot downgrade "
                f"{len(agents)} agent(s) for user {user_id}"
            )
            logger.critical(f"🚨 AGENT_DOWNGRADE: {message}")
            self._event_bus.dispatch(OperatorAlert(
                title="Free-tier model missing",
                message=message,
                context={"user_id": user_id, "agent_ids": [a.id for a in agents]},
            ))
            raise ConfigurationError(message)

        for agent in agents:
            previous = agent.llm_model
            config = dict(agent.config or {})
            config["model"] = free_model.id
            agent.config = config
            flag_modified(agent, "config")
            agent.llm_model = free_model.id
            logger.info(f"⬇️ AGENT_DOWNGRADE: Agent {agent.id} {previous} -> {free_model.id}")

        session.flush()
        return len(agents)
