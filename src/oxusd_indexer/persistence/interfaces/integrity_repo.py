from __future__ import annotations

from typing import Protocol

from oxusd_indexer.domain.integrity import IntegrityIssue


class IntegrityRepoProtocol(Protocol):
    def record_issue(self, issue: IntegrityIssue) -> None: ...

    def list_issues(
        self, *, limit: int = 100, code: str | None = None
    ) -> list[dict[str, object]]: ...

    def count_by_code(self) -> dict[str, int]: ...
