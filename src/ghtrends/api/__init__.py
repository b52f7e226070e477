from .github_client import (
    GithubSearchClient,
    RateLimitedError,
    RepoItem,
    SearchAPIError,
    SearchError,
    SearchPage,
    SearchQuery,
)

__all__ = [
    "GithubSearchClient",
    "RateLimitedError",
    "RepoItem",
    "SearchAPIError",
    "SearchError",
    "SearchPage",
    "SearchQuery",
]
