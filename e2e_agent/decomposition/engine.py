"""
Decomposition engine - natural-language instructions to test commands.

Two passes per instruction, both through the model gateway:

1. **Planning**: ask for a numbered list of atomic steps and parse it.
2. **Generation**: for each step, ask for one command, validate its selector
   against the page snapshot, and request corrections for a bounded number
   of rounds. The last candidate is accepted even if it is still invalid;
   execution and self-healing catch what static validation cannot.

An iterative variant asks for "the next command" until the model answers
``COMPLETE`` or the iteration cap is reached.
"""

import re
from uuid import uuid4

from loguru import logger

from e2e_agent.core.config import Settings, get_settings
from e2e_agent.core.exceptions import DecompositionFailed, E2EAgentError, OperationCancelled
from e2e_agent.core.page import PageContextProvider
from e2e_agent.core.retry import CancellationToken, RetryPolicy, check_cancelled
from e2e_agent.decomposition.validation import CommandValidator, ValidationReport
from e2e_agent.dsl.models import Command, Subtask, noop_command
from e2e_agent.dsl.parser import DSLParser, ParseFailure
from e2e_agent.dsl.tokenizer import strip_code_fences
from e2e_agent.llm.backends import ChatMessage, LLMContext
from e2e_agent.llm.gateway import ModelGateway
from e2e_agent.prompts.builder import PromptBuilder

# =============================================================================
# PLAN PARSING
# =============================================================================

NUMBERED_STEP = re.compile(r"^\s*\d+[.)]\s+(.+)$")
BULLET_STEP = re.compile(r"^\s*[-*]\s+(.+)$")
COMPLETION_WORDS = ("complete", "done")
MIN_STEP_LENGTH = 5


def parse_plan_steps(response: str, instruction: str) -> list[str]:
    """
    Extract ordered step descriptions from a planning response.

    Numbered (``1. ...``) and bulleted (``- ...``) lines are steps. When
    neither appears, every non-trivial line that is not a header becomes a
    step. When nothing survives, the instruction itself is the only step.

    Example:
        >>> parse_plan_steps("Plan:\\n\\n1. First step\\n\\n2. Second step\\n\\nSteps complete.", "x")
        ['First step', 'Second step']
    """
    lines = [line.strip() for line in strip_code_fences(response).split("\n")]

    steps: list[str] = []
    for line in lines:
        match = NUMBERED_STEP.match(line) or BULLET_STEP.match(line)
        if match:
            step = match.group(1).strip()
            if step:
                steps.append(step)
    if steps:
        return steps

    for line in lines:
        if not line or line.endswith(":") or line.startswith("#"):
            continue
        if len(line) >= MIN_STEP_LENGTH:
            steps.append(line)
    if steps:
        return steps

    logger.warning("Plan response had no usable steps, using the instruction as one step")
    return [instruction]


def is_completion_signal(content: str) -> bool:
    """Whether a model response says the task is finished."""
    normalized = strip_code_fences(content).strip().lower().rstrip(".!")
    if normalized in COMPLETION_WORDS:
        return True
    return normalized.startswith("# complete")


# =============================================================================
# ENGINE
# =============================================================================


class DecompositionEngine:
    """
    Turn an instruction into a validated :class:`Subtask`.

    Example:
        >>> engine = DecompositionEngine(gateway, page=StaticPageContext(html))
        >>> subtask = await engine.decompose("Log in with a@b.com / secret")
        >>> [c.type.value for c in subtask.commands]
        ['click', 'fill', 'fill']
    """

    def __init__(
        self,
        gateway: ModelGateway,
        page: PageContextProvider | None = None,
        prompt_builder: PromptBuilder | None = None,
        validator: CommandValidator | None = None,
        refinement_policy: RetryPolicy | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            gateway: Model gateway used for every call.
            page: Page-context provider. Without one, prompts carry no markup.
            prompt_builder: Prompt builder; carries the HTML character budget.
            validator: Static selector validator.
            refinement_policy: Bounds the validation-refinement rounds per step.
            model: Model override passed to the gateway.
            temperature: Temperature override.
            max_tokens: Completion token cap override.
        """
        self.gateway = gateway
        self.page = page
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.validator = validator or CommandValidator()
        self.refinement_policy = refinement_policy or RetryPolicy.no_backoff(3)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.parser = DSLParser()

    @classmethod
    def from_settings(
        cls,
        gateway: ModelGateway,
        page: PageContextProvider | None = None,
        settings: Settings | None = None,
    ) -> "DecompositionEngine":
        """Build an engine with the HTML budget and refinement rounds from settings."""
        settings = settings or get_settings()
        return cls(
            gateway,
            page=page,
            prompt_builder=PromptBuilder(html_budget=settings.e2e_html_budget),
            refinement_policy=RetryPolicy.no_backoff(settings.e2e_refinement_rounds),
        )

    # -------------------------------------------------------------------------
    # HELPERS
    # -------------------------------------------------------------------------

    def _context(
        self,
        system_prompt: str,
        tags: list[str],
        history: list[ChatMessage] | None = None,
    ) -> LLMContext:
        return LLMContext(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=system_prompt,
            conversation_history=list(history or []),
            tags=["decomposition", *tags],
        )

    async def _snapshot(self) -> str:
        """Full simplified page markup; prompts truncate it further."""
        if self.page is None:
            return ""
        try:
            return await self.page.get_snapshot()
        except Exception as e:
            raise DecompositionFailed(f"Failed to read page context: {e}") from e

    async def _ask(
        self,
        prompt: str,
        context: LLMContext,
        stage: str,
        token: CancellationToken | None,
    ) -> str:
        check_cancelled(token)
        try:
            response = await self.gateway.generate(prompt, context, token)
        except OperationCancelled:
            raise
        except E2EAgentError as e:
            raise DecompositionFailed(f"{stage} failed: {e}") from e
        return response.content

    # -------------------------------------------------------------------------
    # PLANNING
    # -------------------------------------------------------------------------

    async def create_plan(
        self,
        instruction: str,
        token: CancellationToken | None = None,
    ) -> list[str]:
        """
        Ask the model for an ordered list of atomic steps.

        Raises:
            DecompositionFailed: Page context or model call failed.
        """
        html = await self._snapshot()
        prompt = self.prompt_builder.build_planning_prompt(instruction, html)
        context = self._context(self.prompt_builder.build_planning_system_prompt(), ["planning"])
        content = await self._ask(prompt, context, "Planning", token)

        steps = parse_plan_steps(content, instruction)
        logger.info(f"Planned {len(steps)} steps for: {instruction}")
        return steps

    parse_plan_steps = staticmethod(parse_plan_steps)

    # -------------------------------------------------------------------------
    # GENERATION
    # -------------------------------------------------------------------------

    async def generate_command_for_step(
        self,
        step: str,
        instruction: str,
        html: str,
        token: CancellationToken | None = None,
    ) -> Command:
        """
        Ask for exactly one command for ``step``.

        An unparseable response degrades to a no-op ``wait`` command.
        """
        prompt = self.prompt_builder.build_command_generation_prompt(step, instruction, html)
        context = self._context(self.prompt_builder.build_system_prompt(), ["generation"])
        content = await self._ask(prompt, context, "Command generation", token)

        result = self.parser.parse_response(content)
        if isinstance(result, ParseFailure):
            logger.warning(f"Could not parse command for step '{step}': {result.error}")
            return noop_command()
        return result.command

    def validate_command(self, command: Command, html: str) -> ValidationReport:
        return self.validator.validate(command, html)

    async def refine_command(
        self,
        command: Command,
        issues: list[str],
        html: str,
        token: CancellationToken | None = None,
    ) -> Command:
        """
        Ask for a corrected command given the validation issues.

        An unparseable correction keeps the original candidate.
        """
        prompt = self.prompt_builder.build_validation_refinement_prompt(command, issues, html)
        context = self._context(self.prompt_builder.build_system_prompt(), ["refinement"])
        content = await self._ask(prompt, context, "Command refinement", token)

        result = self.parser.parse_response(content)
        if isinstance(result, ParseFailure):
            logger.warning(f"Could not parse refined command: {result.error}")
            return command
        return result.command

    async def generate_command_for_step_with_validation(
        self,
        step: str,
        instruction: str,
        token: CancellationToken | None = None,
    ) -> Command:
        """
        Generate a command for ``step`` and refine it until it validates.

        Refinement rounds are bounded by ``refinement_policy``. After the last
        round the current candidate is returned whether or not it validates.
        """
        html = await self._snapshot()
        command = await self.generate_command_for_step(step, instruction, html, token)
        policy = self.refinement_policy

        for round_index in policy.attempts():
            report = self.validate_command(command, html)
            if report.valid:
                return command

            logger.info(
                f"Refinement round {round_index + 1}/{policy.max_attempts} for "
                f"'{step}': {'; '.join(report.issues)}"
            )
            command = await self.refine_command(command, report.issues, html, token)
            if not policy.is_last(round_index):
                await policy.sleep(round_index, token)

        report = self.validate_command(command, html)
        if not report.valid:
            logger.warning(
                f"Accepting unvalidated command for '{step}' after "
                f"{policy.max_attempts} rounds: {'; '.join(report.issues)}"
            )
        return command

    # -------------------------------------------------------------------------
    # DECOMPOSITION
    # -------------------------------------------------------------------------

    async def decompose(
        self,
        instruction: str,
        subtask_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> Subtask:
        """
        Plan, then generate one validated command per step.

        Returns:
            A pending Subtask whose commands follow plan order.

        Raises:
            DecompositionFailed: Page context or a model call failed.
        """
        steps = await self.create_plan(instruction, token)

        commands: list[Command] = []
        for index, step in enumerate(steps, start=1):
            logger.debug(f"Generating step {index}/{len(steps)}: {step}")
            commands.append(
                await self.generate_command_for_step_with_validation(step, instruction, token)
            )

        return Subtask(
            id=subtask_id or f"subtask-{uuid4().hex[:8]}",
            description=instruction,
            commands=commands,
        )

    async def decompose_iteratively(
        self,
        instruction: str,
        max_iterations: int = 10,
        subtask_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> Subtask:
        """
        Ask for one command at a time until the model signals completion.

        Stops on ``COMPLETE``/``DONE``, on a refusal before any command was
        produced, or after ``max_iterations`` calls. A run that produced no
        commands yields a single no-op command.

        Raises:
            DecompositionFailed: Page context or a model call failed.
        """
        commands: list[Command] = []
        history: list[ChatMessage] = []
        system_prompt = self.prompt_builder.build_system_prompt()

        for iteration in range(max_iterations):
            html = await self._snapshot()
            prompt = self.prompt_builder.build_iteration_prompt(instruction, html, commands)
            context = self._context(system_prompt, ["iterative"], history)
            content = await self._ask(prompt, context, "Iterative generation", token)

            if is_completion_signal(content):
                logger.info(f"Model signalled completion after {iteration} commands")
                break
            if "cannot" in content.lower() and not commands:
                logger.warning(f"Model declined the instruction: {content.strip()[:200]}")
                break

            result = self.parser.parse_response(content)
            if isinstance(result, ParseFailure):
                logger.warning(f"Iteration {iteration + 1}: {result.error}; using no-op")
                commands.append(noop_command())
            else:
                commands.append(result.command)

            history.append(ChatMessage(role="user", content=prompt))
            history.append(ChatMessage(role="assistant", content=content))
        else:
            logger.info(f"Reached iteration cap ({max_iterations}) for: {instruction}")

        return Subtask(
            id=subtask_id or f"subtask-{uuid4().hex[:8]}",
            description=instruction,
            commands=commands or [noop_command()],
        )
