"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Request

from deskmem.admin_commands import AdminServices
from deskmem.clock import Clock
from deskmem.llm import TextGenerator
from deskmem.services.archival import ArchivalPipeline
from deskmem.services.categorization import Categorizer
from deskmem.services.context_assembler import ContextAssembler
from deskmem.services.conversations import ConversationStore
from deskmem.services.learning import LearningEngine
from deskmem.services.profiles import ProfileRefresher


def build_services(
    text_generator: Optional[TextGenerator] = None,
    session_factory: Optional[Callable] = None,
    clock: Optional[Clock] = None,
) -> AdminServices:
    """Wire the core services around one text generator, session factory and clock."""
    categorizer = Categorizer(text_generator)
    conversations = ConversationStore(session_factory, clock, categorizer)
    profiles = ProfileRefresher(text_generator, session_factory, clock)
    return AdminServices(
        conversations=conversations,
        context=ContextAssembler(
            session_factory,
            clock,
            text_generator=text_generator,
            conversation_store=conversations,
            profile_refresher=profiles,
            categorizer=categorizer,
        ),
        archival=ArchivalPipeline(text_generator, session_factory, clock),
        profiles=profiles,
        learning=LearningEngine(session_factory, clock),
    )


def get_services(request: Request) -> AdminServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services
