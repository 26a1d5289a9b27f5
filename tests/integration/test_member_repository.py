"""
Integration tests for MemberRepository against SQLite.

Tests cover:
- CRUD and identity within a transaction
- Derived queries from names and clause lists
- Result kinds (list, single, optional, count, exists)
- Paging, slicing and page mapping
- Projections, fetch joins and query by example
- Bulk updates and the persistence context
- Native queries
"""

import pytest

from datarepo import (
    Direction,
    ExampleMatcher,
    InvalidPageSizeError,
    NonUniqueResultError,
    PageRequest,
    QueryDefinitionError,
    RepositorySettings,
    Sort,
    UnsupportedComparatorError,
    and_,
    increment,
    path,
)
from tests.domain import (
    Member,
    MemberDto,
    MemberProjection,
    MemberRepository,
    NestedClosedProjection,
    Team,
    TeamInfo,
    UsernameOnly,
    UsernameOnlyDto,
    team_name_is,
    username_is,
)


@pytest.fixture
def teams(tx, team_repository):
    team_a = team_repository.save(tx, Team("teamA"))
    team_b = team_repository.save(tx, Team("teamB"))
    return team_a, team_b


@pytest.fixture
def four_members(tx, member_repository, teams):
    team_a, team_b = teams
    return member_repository.save_all(
        tx,
        [
            Member("member1", 10, team_a),
            Member("member2", 20, team_a),
            Member("member3", 30, team_b),
            Member("member4", 40, team_b),
        ],
    )


@pytest.fixture
def five_members(tx, member_repository):
    return member_repository.save_all(tx, [Member(f"member{i}", 10) for i in range(1, 6)])


class TestCrud:
    """Tests for basic persistence operations."""

    def test_save_and_find(self, tx, member_repository):
        """A saved member is found by id as the same instance."""
        member = member_repository.save(tx, Member("memberA"))

        found = member_repository.find_by_id(tx, member.id)

        assert member.id is not None
        assert found is member
        assert found.username == "memberA"

    def test_members_with_teams(self, tx, member_repository, four_members):
        """Members read back with their teams after the context is cleared."""
        tx.flush()
        tx.clear()

        members = member_repository.find_all(tx, sort=Sort.by("username"))

        assert [m.username for m in members] == ["member1", "member2", "member3", "member4"]
        assert [m.team.get().name for m in members] == ["teamA", "teamA", "teamB", "teamB"]

    def test_basic_crud(self, tx, member_repository):
        """Save, update through dirty checking, count and delete."""
        member1 = member_repository.save(tx, Member("member1"))
        member2 = member_repository.save(tx, Member("member2"))

        member1.username = "member!!!!!!"
        tx.flush()
        tx.clear()

        assert member_repository.find_by_id(tx, member1.id).username == "member!!!!!!"
        assert len(member_repository.find_all(tx)) == 2
        assert member_repository.count(tx) == 2

        member_repository.delete(tx, member_repository.find_by_id(tx, member1.id))
        assert member_repository.delete_by_id(tx, member2.id) is True
        assert member_repository.delete_by_id(tx, member2.id) is False
        assert member_repository.count(tx) == 0

    def test_exists_by_id(self, tx, member_repository):
        """exists_by_id reports presence."""
        member = member_repository.save(tx, Member("member1"))

        assert member_repository.exists_by_id(tx, member.id) is True
        assert member_repository.exists_by_id(tx, member.id + 100) is False

    def test_delete_all(self, tx, member_repository, five_members):
        """delete_all removes every row and detaches managed members."""
        assert member_repository.delete_all(tx) == 5
        assert member_repository.count(tx) == 0
        assert len(tx.managed()) == 0

    def test_delete_all_given(self, tx, member_repository, five_members):
        """delete_all with entities removes only those."""
        assert member_repository.delete_all(tx, five_members[:2]) == 2
        assert member_repository.count(tx) == 3

    def test_save_wrong_type(self, tx, team_repository):
        """Repositories only store their own entity type."""
        with pytest.raises(TypeError, match="stores Team"):
            team_repository.save(tx, Member("member1"))


class TestDerivedQueries:
    """Tests for derived queries."""

    def test_username_and_age_greater_than(self, tx, member_repository):
        """Conditions bind in declaration order."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("AAA", 20))

        result = member_repository.find_by_username_and_age_greater_than(tx, "AAA", 15)

        assert len(result) == 1
        assert result[0].username == "AAA"
        assert result[0].age == 20

    def test_clause_list_query(self, tx, member_repository):
        """Clause lists derive like names."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("BBB", 20))

        result = member_repository.find_member(tx, "AAA", 10)

        assert [m.username for m in result] == ["AAA"]

    def test_find_by_names(self, tx, member_repository):
        """IN clauses take a collection."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("BBB", 20))
        member_repository.save(tx, Member("CCC", 30))

        result = member_repository.find_by_names(tx, ["AAA", "BBB"])

        assert sorted(m.username for m in result) == ["AAA", "BBB"]

    def test_nested_path(self, tx, member_repository, four_members):
        """Paths through relationships join the related table."""
        result = member_repository.find_by_team__name(tx, "teamB")
        assert sorted(m.username for m in result) == ["member3", "member4"]

    def test_top_with_ordering(self, tx, member_repository, four_members):
        """top_N with ordering returns the first N rows."""
        result = member_repository.find_top_2_by_age_greater_than_order_by_age_desc(tx, 15)
        assert [m.age for m in result] == [40, 30]

    def test_criteria_then_ordering(self, tx, member_repository, five_members):
        """A name without a subject keeps its criteria and its ordering."""
        member_repository.save(tx, Member("other", 20))

        result = member_repository.find_by_age_order_by_username_desc(tx, 10)

        assert [m.username for m in result] == ["member5", "member4", "member3", "member2", "member1"]

    def test_return_types(self, tx, member_repository):
        """Lists, single results and optional results."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("BBB", 20))

        assert [m.username for m in member_repository.find_by_username(tx, "AAA")] == ["AAA"]
        assert member_repository.find_member_by_username(tx, "AAA").username == "AAA"
        assert member_repository.find_optional_by_username(tx, "nobody") is None

    def test_single_result_not_unique(self, tx, member_repository):
        """A single-result query over duplicates raises."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("AAA", 20))

        with pytest.raises(NonUniqueResultError):
            member_repository.find_member_by_username(tx, "AAA")
        assert tx.rollback_only

    def test_count_and_exists(self, tx, member_repository, five_members):
        """count_ and exists_ verbs return scalars."""
        assert member_repository.count_by_age(tx, 10) == 5
        assert member_repository.count_by_age(tx, 99) == 0
        assert member_repository.exists_by_username(tx, "member3") is True
        assert member_repository.exists_by_username(tx, "nobody") is False

    def test_username_list(self, tx, member_repository):
        """Projecting one path returns scalars."""
        member_repository.save(tx, Member("AAA", 10))
        member_repository.save(tx, Member("BBB", 20))

        assert sorted(member_repository.find_username_list(tx)) == ["AAA", "BBB"]

    def test_member_dto(self, tx, member_repository, teams):
        """DTO projections read through relationships."""
        member = member_repository.save(tx, Member("AAA", 10, teams[0]))

        dtos = member_repository.find_member_dto(tx)

        assert dtos == [MemberDto(id=member.id, username="AAA", team_name="teamA")]


class TestPaging:
    """Tests for pages and slices."""

    def test_page(self, tx, member_repository, five_members):
        """One page of three out of five."""
        request = PageRequest.of(0, 3, Sort.by(Direction.DESC, "username"))

        page = member_repository.find_by_age(tx, 10, page_request=request)

        assert [m.username for m in page.content] == ["member5", "member4", "member3"]
        assert page.total_elements == 5
        assert page.number == 0
        assert page.total_pages == 2
        assert page.is_first
        assert page.has_next

    def test_page_statements(self, tx, member_repository, store, five_members):
        """A page costs one bounded select and one count."""
        tx.flush()
        store.stats.reset()

        member_repository.find_by_age(tx, 10, page_request=PageRequest.of(1, 3))

        assert store.stats.statement_count == 2
        assert store.stats.statements[0].endswith("LIMIT ? OFFSET ?")
        assert store.stats.statements[1].startswith("SELECT COUNT(*)")

    def test_last_page(self, tx, member_repository, five_members):
        """The last page holds the remainder."""
        page = member_repository.find_by_age(
            tx, 10, page_request=PageRequest.of(1, 3, Sort.by("username"))
        )

        assert [m.username for m in page] == ["member4", "member5"]
        assert page.is_last
        assert not page.has_next

    def test_slice(self, tx, member_repository, store, five_members):
        """A slice looks one row ahead instead of counting."""
        tx.flush()
        store.stats.reset()
        request = PageRequest.of(0, 3, Sort.by(Direction.DESC, "username"))

        window = member_repository.find_slice_by_age(tx, 10, page_request=request)

        assert len(window.content) == 3
        assert window.number == 0
        assert window.is_first
        assert window.has_next
        assert store.stats.statement_count == 1

    def test_list_with_page_request(self, tx, member_repository, five_members):
        """A list query accepts a page request as a window."""
        request = PageRequest.of(0, 3, Sort.by(Direction.DESC, "username"))

        result = member_repository.find_list_by_age(tx, 10, page_request=request)

        assert [m.username for m in result] == ["member5", "member4", "member3"]

    def test_page_map_to_dto(self, tx, member_repository, five_members):
        """Mapping a page keeps its metadata."""
        page = member_repository.find_by_age(
            tx, 10, page_request=PageRequest.of(0, 3, Sort.by(Direction.DESC, "username"))
        )

        dtos = page.map(lambda m: MemberDto(id=m.id, username=m.username, team_name=None))

        assert [d.username for d in dtos.content] == ["member5", "member4", "member3"]
        assert dtos.total_elements == 5
        assert dtos.total_pages == 2

    def test_page_requires_request(self, tx, member_repository):
        """Page-returning queries need a page request."""
        with pytest.raises(QueryDefinitionError, match="needs a page_request"):
            member_repository.find_by_age(tx, 10)

    def test_page_size_limit(self, tx, registry, settings, engine):
        """Sizes above max_page_size are rejected."""
        limited = RepositorySettings(database=settings.database, max_page_size=2)
        repository = MemberRepository(registry, limited, engine)

        with pytest.raises(InvalidPageSizeError, match="exceeds maximum of 2"):
            repository.page(tx, None, PageRequest.of(0, 3))

    def test_default_page(self, tx, member_repository, five_members):
        """Without a request the default page size applies."""
        page = member_repository.page(tx)

        assert page.size == 20
        assert page.total_elements == 5
        assert len(page) == 5

    def test_page_of_projections(self, tx, member_repository, five_members):
        """Pages can carry projections."""
        page = member_repository.page(
            tx,
            path("age").equals(10),
            PageRequest.of(0, 2, Sort.by("username")),
            projection="username",
        )

        assert page.content == ["member1", "member2"]
        assert page.total_elements == 5


class TestBulkUpdate:
    """Tests for bulk updates."""

    @pytest.fixture
    def aged_members(self, tx, member_repository):
        return member_repository.save_all(
            tx,
            [
                Member("member1", 10),
                Member("member2", 19),
                Member("member3", 20),
                Member("member4", 21),
                Member("member5", 40),
            ],
        )

    def test_bulk_update_leaves_context_stale(self, tx, member_repository, aged_members):
        """Managed instances keep their old state until refreshed."""
        assert member_repository.bulk_age_plus(tx, 20) == 3

        member5 = member_repository.find_by_username(tx, "member5")[0]
        assert member5.age == 40

        tx.refresh(member5)
        assert member5.age == 41

    def test_bulk_update_with_clear(self, tx, member_repository, aged_members):
        """Clearing after the update reloads fresh state."""
        assert member_repository.bulk_age_plus(tx, 20, clear=True) == 3

        member5 = member_repository.find_by_username(tx, "member5")[0]

        assert member5.age == 41
        assert member5 is not aged_members[4]

    def test_bulk_update_literal(self, tx, member_repository, four_members):
        """Literal assignments through a joined predicate."""
        updated = member_repository.bulk_update(tx, team_name_is("teamA"), {"age": 0}, clear=True)

        assert updated == 2
        assert member_repository.count_by_age(tx, 0) == 2

    def test_bulk_update_rejects_wrong_kind(self, tx, member_repository, aged_members):
        """Values that do not fit the field kind never reach the store."""
        with pytest.raises(ValueError, match="Invalid bulk update"):
            member_repository.bulk_update(tx, None, {"age": "x"})
        with pytest.raises(ValueError, match="Cannot increment"):
            member_repository.bulk_update(tx, None, {"username": increment(1)})
        with pytest.raises(ValueError, match="Cannot increment"):
            member_repository.bulk_update(tx, None, {"age": increment(0.5)})

        assert sorted(m.age for m in member_repository.find_all(tx)) == [10, 19, 20, 21, 40]

    def test_bulk_update_matches_prior_count(self, tx, member_repository, aged_members):
        """The affected count equals the matching rows counted beforehand."""
        predicate = path("age").greater_than_or_equal(20)
        before = member_repository.count(tx, predicate)

        assert member_repository.bulk_update(tx, predicate, {"age": increment(1)}) == before


class TestFetching:
    """Tests for lazy references and fetch joins."""

    def test_lazy_loading(self, tx, member_repository, store, four_members):
        """Each distinct team loads with its own select."""
        tx.flush()
        tx.clear()
        store.stats.reset()

        members = member_repository.find_all(tx)
        assert store.stats.select_count == 1
        assert not any(m.team.resolved for m in members)

        names = [m.team.get().name for m in members]

        assert sorted(names) == ["teamA", "teamA", "teamB", "teamB"]
        assert store.stats.select_count == 3

    def test_fetch_join(self, tx, member_repository, store, four_members):
        """A fetch join loads teams in the same statement."""
        tx.flush()
        tx.clear()
        store.stats.reset()

        members = member_repository.find_member_fetch_join(tx)
        names = [m.team.get().name for m in members]

        assert sorted(names) == ["teamA", "teamA", "teamB", "teamB"]
        assert all(m.team.resolved for m in members)
        assert store.stats.select_count == 1

    def test_entity_graph(self, tx, member_repository, store, four_members):
        """Derived queries can declare fetched relationships."""
        tx.flush()
        tx.clear()
        store.stats.reset()

        members = member_repository.find_entity_graph_by_username(tx, "member1")

        assert members[0].team.resolved
        assert members[0].team.get().name == "teamA"
        assert store.stats.select_count == 1

    def test_fetch_collection(self, tx, team_repository, store, four_members):
        """One-to-many fetch joins group child rows."""
        tx.flush()
        tx.clear()
        store.stats.reset()

        teams = team_repository.fetch_eager(tx, None, ["members"], sort=Sort.by("name"))

        assert [t.name for t in teams] == ["teamA", "teamB"]
        assert sorted(m.username for m in teams[0].members.get()) == ["member1", "member2"]
        assert len(teams[1].members.get()) == 2
        assert store.stats.select_count == 1

    def test_lazy_collection(self, tx, team_repository, four_members):
        """Collections load on first access."""
        tx.flush()
        tx.clear()

        team = team_repository.find_by_name(tx, "teamB")

        assert not team.members.resolved
        assert sorted(m.username for m in team.members.get()) == ["member3", "member4"]

    def test_page_with_collection_fetch(self, tx, team_repository, store, four_members):
        """A page counts teams, not joined member rows, and keeps whole collections."""
        tx.flush()
        tx.clear()
        store.stats.reset()

        page = team_repository.page(tx, None, PageRequest.of(0, 1, Sort.by("name")), fetch=("members",))

        assert [t.name for t in page.content] == ["teamA"]
        assert page.content[0].members.resolved
        assert sorted(m.username for m in page.content[0].members.get()) == ["member1", "member2"]
        assert page.total_elements == 2
        assert page.has_next
        # id window, joined load, count
        assert store.stats.select_count == 3

    def test_slice_with_collection_fetch(self, tx, team_repository, four_members):
        """The slice lookahead is one team, not one joined row."""
        tx.flush()
        tx.clear()

        request = PageRequest.of(0, 1, Sort.by(Direction.DESC, "name"))
        first = team_repository.slice(tx, None, request, fetch=("members",))
        second = team_repository.slice(tx, None, request.next(), fetch=("members",))

        assert [t.name for t in first.content] == ["teamB"]
        assert sorted(m.username for m in first.content[0].members.get()) == ["member3", "member4"]
        assert first.has_next
        assert [t.name for t in second.content] == ["teamA"]
        assert len(second.content[0].members.get()) == 2
        assert not second.has_next

    def test_read_only_hint(self, tx, member_repository, store):
        """Read-only loads are not dirty-checked."""
        member_repository.save(tx, Member("member1", 10))
        tx.flush()
        tx.clear()

        member = member_repository.find_read_only_by_username(tx, "member1")
        member.username = "member2"
        store.stats.reset()

        assert tx.flush() == 0
        assert store.stats.statement_count == 0

    def test_lock_query(self, tx, member_repository, store):
        """Locking queries take the write lock first."""
        member_repository.save(tx, Member("member1", 10))
        store.stats.reset()

        result = member_repository.find_lock_by_username(tx, "member1")

        assert [m.username for m in result] == ["member1"]
        assert store.stats.statements[0].startswith("UPDATE member SET member_id = member_id")


class TestSpecifications:
    """Tests for predicates and query by example."""

    def test_spec_basic(self, tx, member_repository, four_members):
        """Composed predicates filter across relationships."""
        result = member_repository.find_all(tx, and_(username_is("member1"), team_name_is("teamA")))
        assert [m.username for m in result] == ["member1"]

    def test_spec_skips_missing(self, tx, member_repository, four_members):
        """None predicates are skipped."""
        result = member_repository.find_all(tx, and_(username_is(None), team_name_is("teamB")))
        assert len(result) == 2

    def test_query_by_example(self, tx, member_repository, four_members):
        """A probe with a nested team matches on both."""
        probe = Member("member1", team=Team("teamA"))
        matcher = ExampleMatcher(ignored_paths=("age",))

        result = member_repository.find_by_example(tx, probe, matcher)

        assert [m.username for m in result] == ["member1"]

    def test_query_by_example_no_match(self, tx, member_repository, four_members):
        """Probe values are matched exactly."""
        probe = Member("member1", team=Team("teamB"))
        matcher = ExampleMatcher(ignored_paths=("age",))

        assert member_repository.find_by_example(tx, probe, matcher) == []

    def test_and_is_intersection(self, tx, member_repository, four_members):
        """and_(p, q) returns exactly the members both p and q return."""
        p = path("age").greater_than(15)
        q = team_name_is("teamA")

        both = {m.id for m in member_repository.find_all(tx, and_(p, q))}
        separately = {m.id for m in member_repository.find_all(tx, p)} & {
            m.id for m in member_repository.find_all(tx, q)
        }

        assert both == separately
        assert [m.username for m in member_repository.find_all(tx, and_(p, q))] == ["member2"]

    @pytest.mark.parametrize(
        "predicate",
        [
            path("age").greater_than(15),
            path("username").starting_with("member"),
            path("team.name").equals("teamB"),
            path("age").in_([10, 40, 99]),
            path("age").less_than(0),
        ],
    )
    def test_count_matches_find_all(self, tx, member_repository, four_members, predicate):
        """count(p) equals the number of entities find_all(p) returns."""
        assert member_repository.count(tx, predicate) == len(member_repository.find_all(tx, predicate))

    def test_string_comparator_on_int_rejected(self, tx, member_repository, four_members):
        """Hand-built predicates are checked against field kinds too."""
        with pytest.raises(UnsupportedComparatorError):
            member_repository.find_all(tx, path("age").containing("1"))
        assert tx.rollback_only


class TestProjections:
    """Tests for projection shapes."""

    def test_closed_projection(self, tx, member_repository, four_members):
        """Interface-like models select only their fields."""
        result = member_repository.find_closed_projections_by_username(tx, "member1")
        assert result == [UsernameOnly(username="member1")]

    def test_class_projection(self, tx, member_repository, four_members):
        """DTO classes work the same way."""
        result = member_repository.find_class_projections_by_username(tx, "member1")
        assert result == [UsernameOnlyDto(username="member1")]

    def test_nested_projection(self, tx, member_repository, four_members):
        """Nested models read the related entity."""
        result = member_repository.find_projections_by_username(
            tx, "member1", projection=NestedClosedProjection
        )
        assert result == [NestedClosedProjection(username="member1", team=TeamInfo(name="teamA"))]

    def test_nested_projection_without_team(self, tx, member_repository):
        """A missing relationship projects to None."""
        member_repository.save(tx, Member("loner", 10))

        result = member_repository.find_projections_by_username(
            tx, "loner", projection=NestedClosedProjection
        )

        assert result[0].team is None

    def test_projection_statement(self, tx, member_repository, store, four_members):
        """Projections select only the needed columns."""
        tx.flush()
        store.stats.reset()

        member_repository.find_closed_projections_by_username(tx, "member1")

        assert store.stats.statements[0].startswith("SELECT t0.username FROM member t0")


class TestNativeQueries:
    """Tests for native SQL."""

    def test_native_entity(self, tx, member_repository, four_members):
        """Rows covering the entity become managed entities."""
        member = member_repository.find_by_native_query(tx, "member2")

        assert member is four_members[1]

    def test_native_entity_after_clear(self, tx, member_repository, four_members):
        """Native rows materialize with lazy references."""
        tx.flush()
        tx.clear()

        member = member_repository.find_by_native_query(tx, "member3")

        assert isinstance(member, Member)
        assert member.team.get().name == "teamB"

    def test_call_custom(self, tx, member_repository, five_members):
        """Custom repository methods can run native SQL."""
        assert len(member_repository.find_member_custom(tx)) == 5

    def test_native_dict_rows(self, tx, member_repository, five_members):
        """Rows that do not cover the entity stay dicts."""
        rows = member_repository.native(
            tx, "select username from member where age = :age order by username", age=10
        )
        assert rows[0] == {"username": "member1"}

    def test_native_projection_page(self, tx, member_repository, team_repository):
        """Native pages shape rows and use the count query."""
        team = team_repository.save(tx, Team("teamA"))
        member_repository.save(tx, Member("m1", 0, team))
        member_repository.save(tx, Member("m2", 0, team))

        page = member_repository.find_by_native_projection(tx, PageRequest.of(0, 10))

        assert len(page.content) == 2
        assert page.total_elements == 2
        assert all(isinstance(p, MemberProjection) for p in page.content)
        assert [p.team_name for p in page.content] == ["teamA", "teamA"]
