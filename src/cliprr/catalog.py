"""Episode catalog contract.

The core treats show and episode ids as opaque integers owned by an external
library. Workers only need to resolve an episode to its media path and find
its siblings (same show, same season).
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Episode(BaseModel):
    """One media file of a show."""

    model_config = ConfigDict(frozen=True)

    id: int
    show_id: int
    season_number: int = Field(ge=0)
    episode_number: int = Field(ge=0)
    path: str = Field(..., description="Media file path (read-only for cliprr)")
    show_name: Optional[str] = None


class EpisodeCatalog(ABC):
    """Read-only lookup of episodes."""

    @abstractmethod
    def get_episode(self, episode_id: int) -> Optional[Episode]:
        """Episode by id, or None when unknown."""

    @abstractmethod
    def episodes_for_show(self, show_id: int) -> List[Episode]:
        """All episodes of a show, ordered by season, episode number, id."""

    def get_siblings(self, episode: Episode, limit: Optional[int] = None) -> List[Episode]:
        """Other episodes of the same show and season.

        With a limit, the episodes nearest by episode number are kept.
        Result is ordered by id so detection does not depend on lookup order.
        """
        siblings = [
            e
            for e in self.episodes_for_show(episode.show_id)
            if e.season_number == episode.season_number and e.id != episode.id
        ]
        siblings.sort(key=lambda e: (abs(e.episode_number - episode.episode_number), e.episode_number, e.id))
        if limit is not None:
            siblings = siblings[:limit]
        return sorted(siblings, key=lambda e: e.id)


class InMemoryCatalog(EpisodeCatalog):
    def __init__(self, episodes: Iterable[Episode] = ()):
        self._episodes: Dict[int, Episode] = {}
        for episode in episodes:
            self.add(episode)

    def add(self, episode: Episode) -> None:
        self._episodes[episode.id] = episode

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        return self._episodes.get(episode_id)

    def episodes_for_show(self, show_id: int) -> List[Episode]:
        return sorted(
            (e for e in self._episodes.values() if e.show_id == show_id),
            key=lambda e: (e.season_number, e.episode_number, e.id),
        )

    def all_episodes(self) -> List[Episode]:
        return sorted(
            self._episodes.values(),
            key=lambda e: (e.show_id, e.season_number, e.episode_number, e.id),
        )

    def __len__(self) -> int:
        return len(self._episodes)


class LibraryCatalog(InMemoryCatalog):
    """Catalog built from a directory tree of tagged episode files."""

    def __init__(self, root: str, episodes: Iterable[Episode] = ()):
        super().__init__(episodes)
        self.root = root

    @classmethod
    def from_directory(cls, root: str) -> "LibraryCatalog":
        from .scanner import scan_library

        return cls(root, scan_library(root))
