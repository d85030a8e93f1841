from cliprr.catalog import Episode, InMemoryCatalog, LibraryCatalog


def episode(episode_id, number, season=1, show_id=7):
    return Episode(
        id=episode_id,
        show_id=show_id,
        season_number=season,
        episode_number=number,
        path=f"/tv/{episode_id}.mkv",
    )


class TestInMemoryCatalog:
    def setup_method(self):
        self.catalog = InMemoryCatalog(
            [
                episode(105, 5),
                episode(101, 1),
                episode(103, 3),
                episode(102, 2),
                episode(104, 4),
                episode(201, 1, season=2),
                episode(301, 1, show_id=8),
            ]
        )

    def test_lookup(self):
        assert self.catalog.get_episode(103).episode_number == 3
        assert self.catalog.get_episode(999) is None
        assert len(self.catalog) == 7

    def test_episodes_for_show_are_ordered(self):
        ids = [e.id for e in self.catalog.episodes_for_show(7)]
        assert ids == [101, 102, 103, 104, 105, 201]

    def test_siblings_same_show_and_season(self):
        siblings = self.catalog.get_siblings(self.catalog.get_episode(103))
        assert [e.id for e in siblings] == [101, 102, 104, 105]

    def test_siblings_limit_keeps_nearest(self):
        siblings = self.catalog.get_siblings(self.catalog.get_episode(104), limit=2)
        assert [e.id for e in siblings] == [103, 105]

    def test_no_siblings(self):
        assert self.catalog.get_siblings(self.catalog.get_episode(201)) == []


def test_library_catalog_from_directory(tmp_path):
    show = tmp_path / "Show A"
    show.mkdir()
    for n in (1, 2, 3):
        (show / f"Show.A.S01E0{n}.mkv").touch()

    catalog = LibraryCatalog.from_directory(str(tmp_path))

    assert len(catalog) == 3
    first = catalog.all_episodes()[0]
    assert catalog.get_episode(first.id) == first
    assert len(catalog.get_siblings(first)) == 2
    assert catalog.root == str(tmp_path)
