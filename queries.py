from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from errors import from_pydantic
from schemas import (
    MAX_PAGE_SIZE,
    Issue,
    IssueFilter,
    IssuePage,
    IssueSummary,
    IssueView,
    IssueViewPage,
    PageMeta,
    User,
    UserSummary,
    VotePage,
    VoteView,
)

DEFAULT_NEARBY_DISTANCE_M = 5000
SUMMARY_FIELDS = set(IssueSummary.model_fields)


def parse_filter(params: Union[IssueFilter, Dict[str, Any]]) -> IssueFilter:
    if isinstance(params, IssueFilter):
        return params
    try:
        return IssueFilter.model_validate(params)
    except PydanticValidationError as exc:
        raise from_pydantic(exc)


def _summary(user_id: Optional[str], users: Dict[str, User]) -> Optional[UserSummary]:
    if user_id is None:
        return None
    user = users.get(user_id)
    if user is None:
        return UserSummary(id=user_id)
    return UserSummary(id=user.id, name=user.name, email=user.email)


class IssueQueryService:
    def __init__(self, issues, ledger, users):
        self.issues = issues
        self.ledger = ledger
        self.users = users

    async def search(self, params: Union[IssueFilter, Dict[str, Any]]) -> IssuePage:
        f = parse_filter(params)
        total = await self.issues.count(f)
        items = await self.issues.find(f, skip=f.skip, limit=f.limit)
        return IssuePage(data=items, meta=PageMeta.build(f.page, f.limit, total))

    async def nearby(self, lng: float, lat: float, max_distance_m: float = DEFAULT_NEARBY_DISTANCE_M,
                     limit: int = MAX_PAGE_SIZE) -> List[Issue]:
        limit = limit if 1 <= limit <= MAX_PAGE_SIZE else MAX_PAGE_SIZE
        return await self.issues.find_near(lng, lat, max_distance_m, limit)

    async def expand(self, issues: List[Issue]) -> List[IssueView]:
        """Swap reporter and assignee ids for their name and email, one user lookup per batch."""
        ids = {i.reportedBy for i in issues} | {i.assignedTo for i in issues if i.assignedTo}
        users = await self.users.find_many(ids)
        return [
            IssueView(
                **issue.model_dump(exclude={"reportedBy", "assignedTo"}),
                reportedBy=_summary(issue.reportedBy, users),
                assignedTo=_summary(issue.assignedTo, users),
            )
            for issue in issues
        ]

    async def expand_one(self, issue: Issue) -> IssueView:
        return (await self.expand([issue]))[0]

    async def expand_page(self, page: IssuePage) -> IssueViewPage:
        return IssueViewPage(data=await self.expand(page.data), meta=page.meta)

    async def votes_by(self, voter_id: str, page: Any = 1, limit: Any = None) -> VotePage:
        # reuse the filter's page/limit clamping
        f = IssueFilter(page=page, limit=limit)
        total = await self.ledger.count_by_voter(voter_id)
        votes = await self.ledger.list_by_voter(voter_id, skip=f.skip, limit=f.limit)
        issues = await self.issues.find_many(v.issueId for v in votes)
        data = []
        for vote in votes:
            issue = issues.get(vote.issueId)
            summary = IssueSummary(**issue.model_dump(include=SUMMARY_FIELDS)) if issue else None
            data.append(VoteView(**vote.model_dump(), issue=summary))
        return VotePage(data=data, meta=PageMeta.build(f.page, f.limit, total))
