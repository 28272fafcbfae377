from typing import Dict

from .config import AppSettings
from .curation import CurationAgent
from .errors import NotFoundError
from .itinerary_store import ItineraryStore
from .llm import ContentClient
from .orchestrator import Orchestrator
from .places import PlacesClient
from .research import ResearchAgent
from .response import ResponseAgent
from .services import PipelineServices
from .stage_agent import StageAgent
from .timeout_monitor import TimeoutMonitor
from .validation import ValidationAgent


class Pipeline:
    """The four stage agents plus the orchestrator and timeout monitor, sharing one set of stores."""

    def __init__(
        self,
        services: PipelineServices,
        settings: AppSettings,
        content: ContentClient,
        places: PlacesClient,
        itineraries: ItineraryStore,
    ):
        self.services = services
        self.itineraries = itineraries
        self.agents: Dict[str, StageAgent] = {
            "research": ResearchAgent(services, content, settings.content.research),
            "curation": CurationAgent(services, content, settings.content.curation),
            "validation": ValidationAgent(services, places, delay_ms=settings.validation_delay_ms),
            "response": ResponseAgent(services, itineraries),
        }
        self.orchestrator = Orchestrator(services)
        self.monitor = TimeoutMonitor(services)

    def agent(self, name: str) -> StageAgent:
        stage = self.agents.get(name)
        if stage is None:
            raise NotFoundError(f"Unknown agent: {name}", {"agent": name, "agents": list(self.agents)})
        return stage
