from .config import StagePromptConfig
from .llm import ContentClient
from .prompts import RESEARCH_SYSTEM, build_research_prompt
from .schemas import ResearchResult
from .services import PipelineServices
from .stage_agent import StageAgent, StageContext, StageOutcome, parse_output


class ResearchAgent(StageAgent):
    """Destination discovery: turns the traveler's requirements into destination context."""

    name = "research"

    def __init__(self, services: PipelineServices, content: ContentClient, prompt_config: StagePromptConfig):
        super().__init__(services)
        self.content = content
        self.prompt_config = prompt_config

    async def execute(self, ctx: StageContext) -> StageOutcome:
        requirements = ctx.request.requirements
        payload = await self.content.generate_json(
            RESEARCH_SYSTEM.strip(),
            build_research_prompt(requirements),
            temperature=self.prompt_config.temperature,
            max_tokens=self.prompt_config.max_tokens,
        )
        result = parse_output(ResearchResult, payload, self.name)
        summary = {
            "researchCompleted": True,
            "destinationAnalyzed": result.destination.name,
            "confidence": result.confidence,
            "contextItemsGathered": sum(1 for value in result.context_data.model_dump().values() if value),
        }
        return StageOutcome(
            result=result,
            summary=summary,
            response={"destination": result.destination.name},
        )
