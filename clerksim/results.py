"""
Concurrent examination/investigation result generation
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from .errors import CaseValidationError, ResultsFetchError
from .gateway import AIGateway
from .models import GeneratedCase, Result, ResultSet, ResultsRequest
from .retry import ResilientInvoker

logger = logging.getLogger(__name__)

EXAMINATION = "examination"
INVESTIGATION = "investigation"

Commit = Callable[[List[Result]], None]


class CombinedResults(BaseModel):
    """Fan-in of both requests. ``None`` means not requested or failed."""
    examination_results: Optional[List[Result]] = None
    investigation_results: Optional[List[Result]] = None


class ParallelResultsCoordinator:
    """
    Issues the examination and investigation requests concurrently, each with
    its own retry budget, and joins on both.

    A request is only issued for a non-empty plan. Each success is committed
    through its callback as soon as it lands, so when the other request fails
    the successful half is already applied before ResultsFetchError surfaces.
    """

    def __init__(self, gateway: AIGateway, invoker: Optional[ResilientInvoker] = None):
        self.gateway = gateway
        self.invoker = invoker or ResilientInvoker()

    async def _fetch_one(self, kind: str, call: Callable[[ResultsRequest], Awaitable[ResultSet]],
                         request: ResultsRequest, commit: Commit) -> List[Result]:
        result_set = await self.invoker.invoke(lambda: call(request))
        commit(result_set.results)
        logger.info(f"Committed {len(result_set.results)} {kind} results for case {request.case_id}")
        return result_set.results

    async def fetch(
        self,
        case_id: str,
        case: GeneratedCase,
        examination_plan: str,
        investigation_plan: str,
        on_examination: Commit,
        on_investigation: Commit,
        department: Optional[str] = None,
    ) -> CombinedResults:
        plans = {EXAMINATION: examination_plan.strip(), INVESTIGATION: investigation_plan.strip()}
        if not any(plans.values()):
            raise CaseValidationError(
                "Both examination and investigation plans are empty",
                user_message="Please enter an examination plan or an investigation plan.",
            )

        routes = {
            EXAMINATION: (self.gateway.examination_results, on_examination),
            INVESTIGATION: (self.gateway.investigation_results, on_investigation),
        }
        kinds = [kind for kind, plan in plans.items() if plan]
        jobs = []
        for kind in kinds:
            call, commit = routes[kind]
            request = ResultsRequest(case_id=case_id, plan=plans[kind], case=case, department=department)
            jobs.append(self._fetch_one(kind, call, request, commit))

        outcomes = await asyncio.gather(*jobs, return_exceptions=True)

        combined = CombinedResults()
        errors: Dict[str, BaseException] = {}
        for kind, outcome in zip(kinds, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"{kind.capitalize()} results failed for case {case_id}: {outcome}")
                errors[kind] = outcome
            else:
                setattr(combined, f"{kind}_results", outcome)

        if errors:
            raise ResultsFetchError(errors, partial=combined)
        return combined
