"""
Self-healing orchestrator - execute, analyze, correct, and retry.

Each attempt runs the current command sequence as a fresh subtask. On
failure the analyzer classifies the error and captures page selectors, the
refinement engine asks the model for a corrected sequence, and the loop
tries again. Attempts are bounded by a :class:`RetryPolicy`, and model
correction calls by a shared :class:`AttemptBudget`.

The loop never raises :class:`SelfHealExhausted` itself. It returns a
:class:`SelfHealingResult`; call :meth:`SelfHealingResult.raise_for_status`
to turn a failure into an exception.
"""

import time

from loguru import logger
from pydantic import BaseModel, Field

from e2e_agent.core.config import Settings, get_settings
from e2e_agent.core.exceptions import RefinementFailed, SelfHealExhausted
from e2e_agent.core.page import PageContextProvider
from e2e_agent.core.retry import AttemptBudget, CancellationToken, RetryPolicy, check_cancelled
from e2e_agent.decomposition.validation import CommandValidator
from e2e_agent.dsl.models import Command, Subtask
from e2e_agent.dsl.parser import DSLParser, serialize_commands
from e2e_agent.execution.executor import CommandExecutor, TestOrchestrator
from e2e_agent.healing.failure_analyzer import FailureAnalyzer, FailureContext
from e2e_agent.healing.refinement import RefinementEngine
from e2e_agent.llm.gateway import ModelGateway
from e2e_agent.prompts.builder import PromptBuilder


class SelfHealingResult(BaseModel):
    """Outcome of a self-healing run."""

    success: bool
    attempts: int
    final_content: str | None = None
    last_error: str | None = None
    failure_history: list[FailureContext] = Field(default_factory=list)
    total_duration: float = Field(default=0.0, description="Milliseconds")
    budget_exhausted: bool = False

    def raise_for_status(self) -> None:
        """
        Raise if healing did not succeed.

        Raises:
            SelfHealExhausted: With the attempt count, last error, and history.
        """
        if not self.success:
            raise SelfHealExhausted(self.attempts, self.last_error, self.failure_history)


class SelfHealingOrchestrator:
    """
    Repair failing command sequences by re-asking the model.

    Example:
        >>> healer = SelfHealingOrchestrator(refinement, executor, page=page)
        >>> result = await healer.refine_test(content, "checkout")
        >>> result.success, result.attempts
        (True, 2)
    """

    def __init__(
        self,
        refinement_engine: RefinementEngine,
        executor: CommandExecutor,
        page: PageContextProvider | None = None,
        failure_analyzer: FailureAnalyzer | None = None,
        validator: CommandValidator | None = None,
        retry_policy: RetryPolicy | None = None,
        call_budget: int = 6,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            refinement_engine: Produces corrected command sequences.
            executor: Execution collaborator for each attempt.
            page: Page-context provider for failure analysis and pre-validation.
            failure_analyzer: Failure classifier.
            validator: When set together with ``page``, commands are checked
                against the page snapshot before execution; an invalid command
                fails the attempt without touching the executor.
            retry_policy: Bounds the number of attempts.
            call_budget: Default cap on correction calls per run.
        """
        self.refinement_engine = refinement_engine
        self.executor = executor
        self.page = page
        self.failure_analyzer = failure_analyzer or FailureAnalyzer()
        self.validator = validator
        self.retry_policy = retry_policy or RetryPolicy.no_backoff(3)
        self.call_budget = call_budget
        self.parser = DSLParser()

    @classmethod
    def from_settings(
        cls,
        gateway: ModelGateway,
        executor: CommandExecutor,
        page: PageContextProvider | None = None,
        settings: Settings | None = None,
    ) -> "SelfHealingOrchestrator":
        """Build an orchestrator with attempt and budget limits from settings."""
        settings = settings or get_settings()
        return cls(
            RefinementEngine(gateway, PromptBuilder(html_budget=settings.e2e_html_budget)),
            executor,
            page=page,
            validator=CommandValidator(),
            retry_policy=RetryPolicy(
                max_attempts=settings.e2e_self_heal_max_attempts,
                base_delay_ms=0,
                max_delay_ms=0,
            ),
            call_budget=settings.e2e_llm_call_budget,
        )

    async def _pre_validate(self, subtask: Subtask) -> bool:
        """Check selectors against the snapshot; fails the subtask on the first issue."""
        if self.validator is None or self.page is None:
            return True
        html = await self.page.get_snapshot()
        for index, command in enumerate(subtask.commands):
            report = self.validator.validate(command, html)
            if not report.valid:
                subtask.mark_in_progress()
                subtask.mark_failed(
                    f"Validation failed: {'; '.join(report.issues)}",
                    failed_command_index=index,
                    metadata={"match_count": report.match_count},
                )
                return False
        return True

    async def _run_attempt(
        self,
        commands: list[Command],
        test_name: str,
        number: int,
        token: CancellationToken | None,
    ) -> Subtask:
        subtask = Subtask(id=f"attempt-{number}", description=test_name, commands=commands)
        if await self._pre_validate(subtask):
            await TestOrchestrator(self.executor).execute_subtask(subtask, token)
        return subtask

    async def refine_test(
        self,
        content: str | list[Command],
        test_name: str,
        max_attempts: int | None = None,
        budget: AttemptBudget | None = None,
        token: CancellationToken | None = None,
    ) -> SelfHealingResult:
        """
        Execute ``content``, correcting and retrying on failure.

        Args:
            content: DSL text or parsed commands.
            test_name: Name used in prompts and logs.
            max_attempts: Overrides the retry policy's attempt count.
            budget: Shared correction-call budget. A fresh one sized
                ``call_budget`` is used when omitted.
            token: Optional cancellation token.

        Returns:
            Success with the attempt count and final content, or failure with
            the last error and the full failure history.

        Raises:
            MalformedCommand: ``content`` is text that does not parse.
            OperationCancelled: The token fired.
        """
        started = time.monotonic()
        policy = self.retry_policy
        if max_attempts is not None:
            policy = policy.model_copy(update={"max_attempts": max_attempts})
        budget = budget or AttemptBudget(self.call_budget)

        commands = self.parser.parse_content(content) if isinstance(content, str) else content
        history: list[FailureContext] = []
        last_error: str | None = None
        attempts = 0
        budget_exhausted = False

        def elapsed() -> float:
            return (time.monotonic() - started) * 1000

        for attempt in policy.attempts():
            check_cancelled(token)
            attempts = attempt + 1
            logger.info(f"Self-heal {test_name}: attempt {attempts}/{policy.max_attempts}")

            subtask = await self._run_attempt(commands, test_name, attempts, token)
            if subtask.is_completed():
                logger.info(f"Self-heal {test_name} succeeded on attempt {attempts}")
                return SelfHealingResult(
                    success=True,
                    attempts=attempts,
                    final_content=serialize_commands(commands),
                    failure_history=history,
                    total_duration=elapsed(),
                )

            failure = await self.failure_analyzer.analyze_failure(subtask, self.page)
            history.append(failure)
            last_error = failure.error

            if policy.is_last(attempt):
                break
            if not budget.consume(f"{test_name} correction {attempts}"):
                budget_exhausted = True
                break

            try:
                commands = await self.refinement_engine.refine(
                    test_name,
                    serialize_commands(commands),
                    failure,
                    history[:-1],
                    token,
                )
            except RefinementFailed as e:
                logger.error(f"Self-heal {test_name}: {e}")
                last_error = f"{failure.error} ({e})"
                break

            await policy.sleep(attempt, token)

        logger.warning(f"Self-heal {test_name} failed after {attempts} attempts: {last_error}")
        return SelfHealingResult(
            success=False,
            attempts=attempts,
            final_content=serialize_commands(commands),
            last_error=last_error,
            failure_history=history,
            total_duration=elapsed(),
            budget_exhausted=budget_exhausted,
        )
