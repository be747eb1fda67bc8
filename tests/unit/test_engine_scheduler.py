"""Tests for engine/scheduler.py."""

from taskweave.enums import ScheduleReason, TaskStatus
from taskweave.engine.scheduler import find_dependency_cycles, is_ready, schedule, select_next_task, status_map


class TestSelectNextTask:
    """Tests for select_next_task."""

    def test_dependency_order(self, make_task):
        init = make_task("setup.init")
        login = make_task("auth.login", dependencies=["setup.init"])
        tasks = [init, login]

        assert select_next_task(tasks) is init

        init.status = TaskStatus.COMPLETED
        assert select_next_task(tasks) is login

    def test_lowest_priority_value_wins(self, make_task):
        tasks = [make_task("a.low", priority=3), make_task("a.high", priority=0), make_task("a.mid", priority=1)]

        assert select_next_task(tasks).id == "a.high"

    def test_ties_go_to_first_encountered(self, make_task):
        tasks = [make_task("a.first", priority=2), make_task("a.second", priority=2)]

        assert select_next_task(tasks).id == "a.first"

    def test_unmet_dependencies_are_never_selected(self, make_task):
        tasks = [
            make_task("auth.login", priority=0, dependencies=["setup.init"]),
            make_task("setup.init", status=TaskStatus.IN_PROGRESS),
            make_task("auth.logout", priority=0, dependencies=["auth.missing"]),
        ]

        assert select_next_task(tasks) is None

    def test_empty_list(self):
        assert select_next_task([]) is None

    def test_is_ready_uses_status_map(self, make_task):
        init = make_task("setup.init", status=TaskStatus.COMPLETED)
        login = make_task("auth.login", dependencies=["setup.init"])

        assert is_ready(login, status_map([init, login]))
        assert not is_ready(init, status_map([init, login]))


class TestFindDependencyCycles:
    """Tests for cycle detection."""

    def test_no_cycles(self, make_task):
        tasks = [make_task("a.x"), make_task("a.y", dependencies=["a.x"])]

        assert find_dependency_cycles(tasks) == []

    def test_two_task_cycle(self, make_task):
        tasks = [make_task("a.x", dependencies=["a.y"]), make_task("a.y", dependencies=["a.x"])]

        assert find_dependency_cycles(tasks) == [["a.x", "a.y"]]

    def test_self_dependency(self, make_task):
        assert find_dependency_cycles([make_task("a.x", dependencies=["a.x"])]) == [["a.x"]]

    def test_longer_cycle_reported_once(self, make_task):
        tasks = [
            make_task("a.x", dependencies=["a.z"]),
            make_task("a.y", dependencies=["a.x"]),
            make_task("a.z", dependencies=["a.y"]),
            make_task("a.w", dependencies=["a.y"]),
        ]

        cycles = find_dependency_cycles(tasks)

        assert len(cycles) == 1
        assert set(cycles[0]) == {"a.x", "a.y", "a.z"}

    def test_finished_tasks_break_cycles(self, make_task):
        tasks = [
            make_task("a.x", dependencies=["a.y"], status=TaskStatus.FAILED),
            make_task("a.y", dependencies=["a.x"]),
        ]

        assert find_dependency_cycles(tasks) == []


    def test_long_chain_does_not_exhaust_the_stack(self, make_task):
        length = 5000
        tasks = [make_task(f"a.t{i}", dependencies=[f"a.t{i + 1}"]) for i in range(length)]
        tasks.append(make_task(f"a.t{length}", dependencies=["a.t0"]))

        cycles = find_dependency_cycles(tasks)

        assert len(cycles) == 1
        assert cycles[0][0] == "a.t0"
        assert len(cycles[0]) == length + 1


class TestSchedule:
    """Tests for schedule decisions."""

    def test_ready(self, make_task):
        decision = schedule([make_task("a.x")])

        assert decision.reason == ScheduleReason.READY
        assert decision.task.id == "a.x"

    def test_exhausted(self, make_task):
        decision = schedule([make_task("a.x", status=TaskStatus.COMPLETED)])

        assert decision.reason == ScheduleReason.EXHAUSTED
        assert decision.task is None
        assert decision.blocked == {}

    def test_waiting_lists_unmet_dependencies(self, make_task):
        tasks = [make_task("a.x", status=TaskStatus.IN_PROGRESS), make_task("a.y", dependencies=["a.x"])]

        decision = schedule(tasks)

        assert decision.reason == ScheduleReason.WAITING
        assert decision.blocked == {"a.y": ["a.x"]}
        assert decision.cycles == []

    def test_cycle_starvation_is_reported(self, make_task):
        tasks = [make_task("a.x", dependencies=["a.y"]), make_task("a.y", dependencies=["a.x"])]

        decision = schedule(tasks)

        assert decision.task is None
        assert decision.reason == ScheduleReason.CYCLE
        assert decision.cycles == [["a.x", "a.y"]]
        assert set(decision.blocked) == {"a.x", "a.y"}
