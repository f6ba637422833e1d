from unittest.mock import patch

import pytest
import requests

from entu_sync.entu_client import EntityRef, EntuClient
from entu_sync.errors import RemoteError, Unauthorized
from tests.fakes import group, make_raw_response, make_response, person, task


class TestEntityRef:

    def test_person_keeps_only_group_parents(self):
        ref = EntityRef.from_api(person("p1", "g1", "g2", other_parents=["school-1"]))

        assert ref.kind == "person"
        assert ref.parent_group_ids == ("g1", "g2")

    def test_task_group(self):
        ref = EntityRef.from_api(task("t1", "g1"))

        assert ref.kind == "task"
        assert ref.group_id == "g1"

    def test_task_without_group(self):
        assert EntityRef.from_api(task("t1")).group_id is None

    def test_unknown_type(self):
        ref = EntityRef.from_api({"_id": "x", "_type": [{"string": "asukoht"}]})

        assert ref.kind == "other"
        assert ref.parent_group_ids == ()


class TestFetchEntity:

    def test_sends_relayed_token(self, client, session, token):
        session.add(person("p1", "g1"))

        entity = client.fetch_entity("p1", token)

        assert entity.id == "p1"
        method, path, _, _, sent_token = session.calls[-1]
        assert (method, path, sent_token) == ("GET", "/api/testdb/entity/p1", token)

    def test_missing_token_never_calls_entu(self, client, session):
        with pytest.raises(Unauthorized):
            client.fetch_entity("p1", None)

        assert session.calls == []

    def test_expired_token_is_401(self, client, session, token):
        session.add(person("p1"))
        session.rejected_tokens.add(token)

        with pytest.raises(RemoteError) as exc_info:
            client.fetch_entity("p1", token)

        assert exc_info.value.remote_status == 401
        assert exc_info.value.status_code == 401

    def test_not_found(self, client, token):
        with pytest.raises(RemoteError) as exc_info:
            client.fetch_entity("missing", token)

        assert exc_info.value.remote_status == 404
        assert exc_info.value.status_code == 500


class TestListRelated:

    def test_tasks_in_group(self, client, session, token):
        session.add(group("g1"), task("t1", "g1"), task("t2", "g1"), task("t3", "g2"), person("p1", "g1"))

        tasks = client.list_tasks_in_group("g1", token)

        assert sorted(t.id for t in tasks) == ["t1", "t2"]
        params = session.calls[-1][2]
        assert params["grupp.reference"] == "g1"
        assert params["_type.string"] == "ulesanne"

    def test_persons_in_group(self, client, session, token):
        session.add(person("p1", "g1"), person("p2", "g1", "g2"), person("p3", "g2"), task("t1", "g1"))

        persons = client.list_persons_in_group("g1", token)

        assert sorted(p.id for p in persons) == ["p1", "p2"]

    def test_no_match_is_empty_list(self, client, token):
        assert client.list_tasks_in_group("nobody", token) == []


class TestGrantAccess:

    def test_grants_cross_product(self, client, session, token):
        session.add(task("t1"), task("t2"))

        result = client.grant_access(["p1", "p2"], ["t1", "t2"], token)

        assert (result.successful, result.skipped, result.failed) == (4, 0, 0)
        assert session.grants_on("t1") == ["p1", "p2"]
        assert session.grants_on("t2") == ["p1", "p2"]
        # one bulk call per target
        assert len(session.posts()) == 2

    def test_existing_grants_are_skipped(self, client, session, token):
        existing = task("t1")
        existing["_expander"] = [{"reference": "p1"}]
        session.add(existing)

        result = client.grant_access(["p1", "p2"], ["t1"], token)

        assert (result.successful, result.skipped, result.failed) == (1, 1, 0)
        assert session.posts()[0][3] == [{"type": "_expander", "reference": "p2"}]

    def test_nothing_posted_when_all_present(self, client, session, token):
        existing = task("t1")
        existing["_expander"] = [{"reference": "p1"}]
        session.add(existing)

        result = client.grant_access(["p1"], ["t1"], token)

        assert result.skipped == 1
        assert session.posts() == []

    def test_bulk_failure_falls_back_to_single_grants(self, client, session, token):
        session.add(task("t1"))
        session.fail_grants.add(("t1", "p3"))

        result = client.grant_access(["p1", "p2", "p3", "p4", "p5"], ["t1"], token)

        assert (result.successful, result.skipped, result.failed) == (4, 0, 1)
        assert session.grants_on("t1") == ["p1", "p2", "p4", "p5"]
        failed = [d for d in result.details if d.status == "failed"]
        assert [(d.subject_id, d.target_id) for d in failed] == [("p3", "t1")]

    def test_unreadable_target_assumes_no_grants(self, client, session, token):
        session.add(task("t1"))
        session.fail_reads.add("t1")

        result = client.grant_access(["p1"], ["t1"], token)

        assert result.successful == 1

    def test_counts_always_add_up(self, client, session, token):
        session.add(task("t1"), task("t2"))
        session.fail_grants.add(("t2", "p1"))

        result = client.grant_access(["p1", "p1"], ["t1", "t2", "missing"], token)

        assert result.total == 3
        assert (result.successful, result.failed) == (1, 2)


class TestRequestRetries:

    def test_retries_server_errors(self, session, token):
        client = EntuClient(api_url="https://entu.test", account="testdb", max_retries=2, session=session)
        responses = [make_response(502), make_response(200, {"entity": person("p1")})]

        with patch.object(session, "request", side_effect=responses) as request, \
                patch("entu_sync.entu_client.time.sleep") as sleep:
            entity = client.fetch_entity("p1", token)

        assert entity.id == "p1"
        assert request.call_count == 2
        sleep.assert_called_once_with(1)

    def test_gives_up_after_max_retries(self, session, token):
        client = EntuClient(api_url="https://entu.test", account="testdb", max_retries=1, session=session)

        with patch.object(session, "request", return_value=make_response(503)), \
                patch("entu_sync.entu_client.time.sleep"):
            with pytest.raises(RemoteError) as exc_info:
                client.fetch_entity("p1", token)

        assert exc_info.value.remote_status == 503

    def test_connection_error(self, client, session, token):
        with patch.object(session, "request", side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(RemoteError) as exc_info:
                client.fetch_entity("p1", token)

        assert exc_info.value.remote_status is None
        assert exc_info.value.status_code == 500

    def test_http_date_retry_after_waits_default(self, session, token):
        client = EntuClient(api_url="https://entu.test", account="testdb", max_retries=1, session=session)
        limited = make_response(429)
        limited.headers["Retry-After"] = "Wed, 21 Oct 2026 07:28:00 GMT"
        responses = [limited, make_response(200, {"entity": person("p1")})]

        with patch.object(session, "request", side_effect=responses), \
                patch("entu_sync.entu_client.time.sleep") as sleep:
            entity = client.fetch_entity("p1", token)

        assert entity.id == "p1"
        sleep.assert_called_once_with(1)

    def test_invalid_json_is_remote_error(self, client, session, token):
        with patch.object(session, "request", return_value=make_raw_response(200, b"<html>ok</html>")):
            with pytest.raises(RemoteError) as exc_info:
                client.fetch_entity("p1", token)

        assert exc_info.value.remote_status == 200
        assert exc_info.value.status_code == 500


class TestGrantAccessUnderBadResponses:

    def test_unparseable_retry_after_does_not_abort_batch(self, session, token):
        client = EntuClient(api_url="https://entu.test", account="testdb", max_retries=1, session=session)
        session.add(task("t1"), task("t2"))
        answer = session.request
        limited_once = []

        def request(method, url, **kwargs):
            if method == "POST" and url.endswith("/entity/t1") and not limited_once:
                limited_once.append(url)
                limited = make_response(429)
                limited.headers["Retry-After"] = "Wed, 21 Oct 2026 07:28:00 GMT"
                return limited
            return answer(method, url, **kwargs)

        with patch.object(session, "request", side_effect=request), \
                patch("entu_sync.entu_client.time.sleep"):
            result = client.grant_access(["p1"], ["t1", "t2"], token)

        assert (result.successful, result.skipped, result.failed) == (2, 0, 0)
        assert session.grants_on("t1") == ["p1"]
        assert session.grants_on("t2") == ["p1"]

    def test_non_json_grant_answer_is_counted_failed(self, client, session, token):
        session.add(task("t1"), task("t2"))
        answer = session.request

        def request(method, url, **kwargs):
            if method == "POST" and url.endswith("/entity/t1"):
                return make_raw_response(200, b"<html>ok</html>")
            return answer(method, url, **kwargs)

        with patch.object(session, "request", side_effect=request):
            result = client.grant_access(["p1"], ["t1", "t2"], token)

        assert result.total == 2
        assert (result.successful, result.failed) == (1, 1)
        assert [(d.target_id, d.status) for d in result.details] == [("t1", "failed"), ("t2", "success")]
        assert session.grants_on("t2") == ["p1"]

    def test_unwrapped_entity_answer_still_skips_existing(self, client, session, token):
        existing = task("t1")
        existing["_expander"] = [{"reference": "p1"}]
        session.add(existing)
        answer = session.request

        def request(method, url, **kwargs):
            if method == "GET" and url.endswith("/entity/t1"):
                return make_response(200, existing)
            return answer(method, url, **kwargs)

        with patch.object(session, "request", side_effect=request):
            result = client.grant_access(["p1"], ["t1"], token)

        assert (result.successful, result.skipped) == (0, 1)
        assert session.posts() == []


class TestEntityIdsInPaths:

    def test_fetch_quotes_entity_id(self, client, session, token):
        session.add(person("a/b?c#d"))

        entity = client.fetch_entity("a/b?c#d", token)

        assert entity.id == "a/b?c#d"
        method, path, params, _, _ = session.calls[-1]
        assert path == "/api/testdb/entity/a%2Fb%3Fc%23d"
        assert params is None

    def test_grant_quotes_target_id(self, client, session, token):
        session.add(task("t/1"))

        result = client.grant_access(["p1"], ["t/1"], token)

        assert result.successful == 1
        assert [c[1] for c in session.calls] == ["/api/testdb/entity/t%2F1"] * 2
        assert session.grants_on("t/1") == ["p1"]
