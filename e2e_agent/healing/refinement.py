"""
Refinement engine - asks the model for a corrected command sequence.
"""

from loguru import logger

from e2e_agent.core.exceptions import E2EAgentError, OperationCancelled, RefinementFailed
from e2e_agent.core.retry import CancellationToken
from e2e_agent.dsl.models import Command
from e2e_agent.dsl.parser import DSLParser, ParseFailure
from e2e_agent.dsl.tokenizer import strip_code_fences
from e2e_agent.healing.failure_analyzer import FailureContext
from e2e_agent.llm.backends import LLMContext
from e2e_agent.llm.gateway import ModelGateway
from e2e_agent.prompts.builder import PromptBuilder


class RefinementEngine:
    """
    Turn a failure report into a replacement command list.

    Example:
        >>> engine = RefinementEngine(gateway)
        >>> commands = await engine.refine("checkout", content, failure)
        >>> commands[0].to_dsl()
        'navigate url=https://shop.test'
    """

    def __init__(
        self,
        gateway: ModelGateway,
        prompt_builder: PromptBuilder | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.parser = DSLParser()

    async def refine(
        self,
        test_name: str,
        current_content: str,
        failure: FailureContext,
        previous_attempts: list[FailureContext] | None = None,
        token: CancellationToken | None = None,
    ) -> list[Command]:
        """
        Request a corrected command sequence.

        Lines of the response that do not parse are dropped with a warning.

        Raises:
            RefinementFailed: The model call failed or no line parsed.
            OperationCancelled: The token fired.
        """
        prompt = self.prompt_builder.build_healing_prompt(
            test_name, current_content, failure, previous_attempts
        )
        context = LLMContext(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self.prompt_builder.build_healing_system_prompt(),
            enable_cache=False,
            tags=["healing", test_name],
        )

        try:
            response = await self.gateway.generate(prompt, context, token)
        except OperationCancelled:
            raise
        except E2EAgentError as e:
            raise RefinementFailed(f"Refinement failed: {e}") from e

        commands: list[Command] = []
        for result in self.parser.parse_lines(strip_code_fences(response.content)):
            if isinstance(result, ParseFailure):
                logger.warning(f"Dropping unparseable refined line: {result.error}")
                continue
            commands.append(result.command)

        if not commands:
            raise RefinementFailed("Refinement failed: response contained no valid commands")

        logger.info(f"Refined {test_name} into {len(commands)} commands")
        return commands
