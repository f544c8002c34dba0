"""
Tests for the batch (entity group transaction) codec.

Responses are assembled by hand in the multipart grammar the service
uses, so the decoder is exercised without any HTTP mocking.
"""

import json
from datetime import datetime, timezone

import pytest

from storagewire.lib import error
from storagewire.lib.buffers import BufferPool
from storagewire.lib.cancellation import CancellationToken
from storagewire.protocol.batch import (
    MAX_BATCH_OPERATIONS,
    ChangesetFailed,
    ItemResults,
    TableBatch,
    TableOperation,
    TableOperationType,
    boundary_from_content_type,
    decode_batch_response,
    decode_batch_response_or_raise,
    encode_batch,
    entity_path,
    expected_status,
    is_changeset_fatal,
    iter_multipart,
    parse_multipart,
)
from storagewire.protocol.entity import Entity, EntityProperty

BASE_URL = "https://acct.table.core.windows.net"
ETAG_1 = "W/\"datetime'2020-01-01T00%3A00%3A00.1234567Z'\""
ETAG_2 = "W/\"datetime'2020-02-02T00%3A00%3A00Z'\""


def http_part(status, reason, headers=None, body=b""):
    lines = [
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        "HTTP/1.1 %d %s" % (status, reason),
    ]
    lines.extend("%s: %s" % item for item in (headers or {}).items())
    lines.append("")
    return ("\r\n".join(lines) + "\r\n").encode("utf-8") + body


def batch_response(parts, changeset=True):
    out = [b"--batchresponse_xyz\r\n"]
    if changeset:
        out.append(b"Content-Type: multipart/mixed; boundary=changesetresponse_abc\r\n\r\n")
        for part in parts:
            out.append(b"--changesetresponse_abc\r\n" + part + b"\r\n")
        out.append(b"--changesetresponse_abc--\r\n")
    else:
        (part,) = parts
        out.append(part + b"\r\n")
    out.append(b"--batchresponse_xyz--\r\n")
    return b"".join(out)


def error_body(code, message):
    return json.dumps(
        {"odata.error": {"code": code, "message": {"lang": "en-US", "value": message}}}
    ).encode("utf-8")


def no_content(etag=None):
    headers = {"X-Content-Type-Options": "nosniff", "DataServiceVersion": "1.0;"}
    if etag:
        headers["ETag"] = etag
    return http_part(204, "No Content", headers)


class TestTableOperation:
    """Operation construction and per-part request details."""

    def test_conditional_operations_need_etag(self):
        """Delete, Replace and Merge refuse an entity without ETag"""
        entity = Entity("p", "r")
        for factory in (TableOperation.delete, TableOperation.replace, TableOperation.merge):
            with pytest.raises(ValueError):
                factory(entity)
        entity.etag = "*"
        assert TableOperation.delete(entity).operation_type is TableOperationType.DELETE

    def test_entity_path_escaping(self):
        """Quotes in keys are doubled, the result is URL safe"""
        assert entity_path("people", "a'b", "c d") == "people(PartitionKey='a''b',RowKey='c%20d')"

    def test_request_headers(self):
        """If-Match for conditional kinds, Prefer for inserts, no body headers for bodiless kinds"""
        from storagewire.protocol.types import PayloadFormat

        fmt = PayloadFormat.NO_METADATA
        entity = Entity("p", "r", etag="*")
        insert = TableOperation.insert(entity).request_headers(fmt)
        assert insert["Prefer"] == "return-no-content"
        assert insert["Content-Type"] == "application/json"
        assert insert["Accept"] == "application/json;odata=nometadata"
        assert "If-Match" not in insert
        assert TableOperation.insert(entity, echo_content=True).request_headers(fmt)["Prefer"] == (
            "return-content"
        )
        delete = TableOperation.delete(entity).request_headers(fmt)
        assert delete["If-Match"] == "*"
        assert "Content-Type" not in delete
        assert "If-Match" not in TableOperation.insert_or_merge(entity).request_headers(fmt)

    def test_request_body(self):
        """Only inserts write the keys into the body, deletes have none"""
        entity = Entity("p", "r", {"A": 1}, etag="*")
        assert json.loads(TableOperation.insert(entity).request_body()) == {
            "PartitionKey": "p",
            "RowKey": "r",
            "A": 1,
        }
        assert json.loads(TableOperation.replace(entity).request_body()) == {"A": 1}
        assert TableOperation.delete(entity).request_body() is None
        assert TableOperation.retrieve("p", "r").request_body() is None


class TestValidation:
    """Composition rules checked at encode time."""

    def test_empty(self):
        """An empty batch can not be sent"""
        with pytest.raises(error.BatchValidationError):
            encode_batch("people", [], BASE_URL)

    def test_too_many(self):
        """At most 100 operations"""
        ops = [TableOperation.insert(Entity("p", str(i))) for i in range(MAX_BATCH_OPERATIONS + 1)]
        with pytest.raises(error.BatchValidationError):
            encode_batch("people", ops, BASE_URL)
        encode_batch("people", ops[:MAX_BATCH_OPERATIONS], BASE_URL)

    def test_retrieve_alone(self):
        """A Retrieve can not share its batch"""
        ops = [TableOperation.retrieve("p", "a"), TableOperation.insert(Entity("p", "b"))]
        with pytest.raises(error.BatchValidationError):
            encode_batch("people", ops, BASE_URL)

    def test_single_partition(self):
        """All operations must share one PartitionKey"""
        batch = TableBatch().insert(Entity("p", "a")).insert(Entity("q", "b"))
        with pytest.raises(error.BatchValidationError):
            batch.validate()

    def test_table_batch(self):
        """TableBatch keeps operations in order"""
        batch = TableBatch()
        batch.insert(Entity("p", "a")).insert_or_replace(Entity("p", "b")).delete(
            Entity("p", "c", etag="*")
        )
        assert len(batch) == 3
        assert [op.row_key for op in batch] == ["a", "b", "c"]
        assert batch[2].operation_type is TableOperationType.DELETE
        batch.validate()


class TestEncodeBatch:
    """The multipart request body."""

    def test_changeset(self):
        """Mutations go into one changeset with the per-kind method and headers"""
        e0 = Entity("p", "r0", {"Name": "Ada"})
        e1 = Entity("p", "r1", {"Age": 3}, etag=ETAG_1)
        e2 = Entity("p", "r2", etag="*")
        encoded = encode_batch(
            "people",
            [TableOperation.insert(e0), TableOperation.merge(e1), TableOperation.delete(e2)],
            BASE_URL,
            batch_id="b1",
            changeset_id="c1",
        )
        body = encoded.body
        assert encoded.content_type == "multipart/mixed; boundary=batch_b1"
        assert encoded.batch_id == "batch_b1"
        assert body.startswith(
            b"--batch_b1\r\nContent-Type: multipart/mixed; boundary=changeset_c1\r\n\r\n--changeset_c1\r\n"
        )
        assert body.endswith(b"--changeset_c1--\r\n--batch_b1--\r\n")
        assert body.count(b"--changeset_c1\r\n") == 3
        assert b"POST https://acct.table.core.windows.net/people HTTP/1.1\r\n" in body
        assert (
            b"MERGE https://acct.table.core.windows.net/people(PartitionKey='p',RowKey='r1') HTTP/1.1\r\n"
            in body
        )
        assert (
            b"DELETE https://acct.table.core.windows.net/people(PartitionKey='p',RowKey='r2') HTTP/1.1\r\n"
            in body
        )
        assert b"Content-ID: 0\r\n" in body and b"Content-ID: 2\r\n" in body
        assert b"Prefer: return-no-content\r\n" in body
        assert ("If-Match: %s\r\n" % ETAG_1).encode() in body
        assert b"If-Match: *\r\n" in body
        assert b'{"PartitionKey": "p", "RowKey": "r0", "Name": "Ada"}' in body
        assert b'{"Age": 3}' in body

    def test_insert_or_merge_uses_merge(self):
        """InsertOrMerge is a MERGE part without If-Match"""
        encoded = encode_batch(
            "people", [TableOperation.insert_or_merge(Entity("p", "r"))], BASE_URL, batch_id="b"
        )
        assert b"MERGE https://acct.table.core.windows.net/people(PartitionKey='p',RowKey='r')" in encoded.body
        assert b"If-Match" not in encoded.body

    def test_single_retrieve(self):
        """A lone Retrieve is a plain query part"""
        encoded = encode_batch(
            "people", [TableOperation.retrieve("p", "r", ["A", "B"])], BASE_URL, batch_id="b1"
        )
        assert b"changeset" not in encoded.body
        assert b"Content-ID" not in encoded.body
        assert (
            b"GET https://acct.table.core.windows.net/people(PartitionKey='p',RowKey='r')?$select=A,B HTTP/1.1\r\n"
            in encoded.body
        )
        assert encoded.body.endswith(b"--batch_b1--\r\n")

    def test_random_boundaries(self):
        """Without ids every batch gets fresh boundaries"""
        ops = [TableOperation.insert(Entity("p", "r"))]
        assert encode_batch("t", ops, BASE_URL).batch_id != encode_batch("t", ops, BASE_URL).batch_id


class TestMultipart:
    """The multipart mini-parser."""

    def test_parse_nested(self):
        """Parts of a nested changeset come out in order"""
        data = batch_response([no_content(ETAG_1), http_part(201, "Created", body=b"{}")])
        parts = parse_multipart(data)
        assert [(p.status, p.reason) for p in parts] == [(204, "No Content"), (201, "Created")]
        assert parts[0].header("etag") == ETAG_1
        assert parts[0].body == b""
        assert parts[1].body == b"{}"

    def test_lf_line_endings(self):
        """Bare LF line endings are accepted"""
        data = batch_response([no_content(ETAG_1)]).replace(b"\r\n", b"\n")
        (part,) = parse_multipart(data)
        assert part.status == 204
        assert part.header("ETag") == ETAG_1

    def test_explicit_boundary(self):
        """The boundary can come from the response Content-Type"""
        boundary = boundary_from_content_type("multipart/mixed; boundary=batchresponse_xyz")
        assert boundary == "batchresponse_xyz"
        assert len(parse_multipart(batch_response([no_content()]), boundary)) == 1

    def test_quoted_boundary(self):
        """Quoted boundary parameters are unquoted"""
        assert boundary_from_content_type('multipart/mixed; boundary="abc"') == "abc"
        assert boundary_from_content_type("application/json") is None

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            b"HTTP/1.1 200 OK\r\n\r\n",
            b"--batchresponse_xyz\r\nContent-Type: application/http\r\n\r\nHTTP/1.1 204 No Content\r\n\r\n",
            b"--batchresponse_xyz\r\nContent-Type: application/http\r\n\r\nGARBAGE\r\n\r\n\r\n--batchresponse_xyz--",
        ],
        ids=["empty", "no-boundary", "unterminated", "bad-status-line"],
    )
    def test_malformed(self, data):
        """Structural damage raises MalformedWireValue"""
        with pytest.raises(error.MalformedWireValue):
            parse_multipart(data)

    def test_buffers_returned(self):
        """Every borrowed buffer is handed back, also when the consumer stops early"""
        pool = BufferPool(max_pooled=4)
        data = batch_response([no_content(), no_content(), no_content()])
        parts = iter_multipart(data, buffer_pool=pool)
        next(parts)
        assert pool.outstanding == 1
        parts.close()
        assert pool.outstanding == 0
        for _ in iter_multipart(data, buffer_pool=pool):
            assert pool.outstanding == 1
        assert pool.outstanding == 0
        assert pool.idle == 1

    def test_cancellation(self):
        """A cancelled token stops the walk between parts"""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(error.OperationCanceled):
            parse_multipart(batch_response([no_content()]), cancellation=token)


class TestDecodeBatchResponse:
    """Classifying batch responses."""

    def test_five_operations_with_missing_retrieve(self):
        """A Retrieve 404 at index 2 is a present-but-empty result, the rest succeed"""
        e0 = Entity("p", "r0", {"Name": "Ada"})
        e1 = Entity("p", "r1")
        e3 = Entity("p", "r3", etag="*")
        e4 = Entity("p", "r4", etag="*")
        ops = [
            TableOperation.insert(e0),
            TableOperation.insert_or_replace(e1),
            TableOperation.retrieve("p", "r2"),
            TableOperation.merge(e3),
            TableOperation.delete(e4),
        ]
        data = batch_response(
            [
                no_content(ETAG_1),
                no_content(ETAG_2),
                http_part(
                    404,
                    "Not Found",
                    {"Content-Type": "application/json;odata=minimalmetadata"},
                    error_body("ResourceNotFound", "The specified resource does not exist."),
                ),
                no_content(ETAG_2),
                no_content(),
            ]
        )
        outcome = decode_batch_response(data, ops)
        assert isinstance(outcome, ItemResults)
        assert outcome.ok
        results = outcome.raise_for_outcome()
        assert len(results) == 5
        assert [r.http_status_code for r in results] == [204, 204, 404, 204, 204]
        assert results[2].result is None
        assert results[0].result is e0
        assert results[0].etag == ETAG_1
        assert e0.etag == ETAG_1
        assert e1.etag == ETAG_2
        assert e3.etag == ETAG_2

    def test_insert_without_echo(self):
        """A 204 insert copies the ETag and derives the Timestamp from it"""
        entity = Entity("p", "r", {"Name": "Ada"})
        ops = [TableOperation.insert(entity)]
        (result,) = decode_batch_response_or_raise(batch_response([no_content(ETAG_1)]), ops)
        assert result.http_status_code == 204
        assert result.result is entity
        assert entity.etag == ETAG_1
        assert entity.timestamp == datetime(2020, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)

    def test_insert_with_echo(self):
        """A 201 insert materializes the echoed entity into the caller's entity"""
        entity = Entity("p", "r", {"Name": "Ada"})
        body = json.dumps(
            {
                "odata.etag": ETAG_2,
                "PartitionKey": "p",
                "RowKey": "r",
                "Timestamp": "2020-02-02T00:00:00Z",
                "Name": "Ada",
                "Count@odata.type": "Edm.Int64",
                "Count": "1",
            }
        ).encode("utf-8")
        part = http_part(
            201,
            "Created",
            {"Content-Type": "application/json;odata=minimalmetadata;charset=utf-8", "ETag": ETAG_2},
            body,
        )
        (result,) = decode_batch_response_or_raise(
            batch_response([part]), [TableOperation.insert(entity, echo_content=True)]
        )
        assert result.http_status_code == 201
        assert result.result is entity
        assert result.etag == ETAG_2
        assert entity.timestamp == datetime(2020, 2, 2, tzinfo=timezone.utc)
        assert entity["Count"] == EntityProperty.int64(1)

    def test_retrieve(self):
        """A lone Retrieve materializes a fresh entity"""
        body = json.dumps({"PartitionKey": "p", "RowKey": "r", "Age": 3}).encode("utf-8")
        part = http_part(
            200, "OK", {"Content-Type": "application/json;odata=minimalmetadata", "ETag": ETAG_1}, body
        )
        (result,) = decode_batch_response_or_raise(
            batch_response([part], changeset=False), [TableOperation.retrieve("p", "r")]
        )
        assert result.http_status_code == 200
        assert result.result == Entity("p", "r", {"Age": 3})
        assert result.etag == ETAG_1

    def test_changeset_fatal(self):
        """An insert conflict rolls back the changeset and leaves no partial result"""
        e0 = Entity("p", "r0")
        e1 = Entity("p", "r1")
        ops = [TableOperation.insert(e0), TableOperation.insert(e1)]
        part = http_part(
            409,
            "Conflict",
            {"Content-Type": "application/json"},
            error_body("EntityAlreadyExists", "1:The specified entity already exists.\nRequestId:x"),
        )
        pool = BufferPool()
        outcome = decode_batch_response(batch_response([part]), ops, buffer_pool=pool)
        assert isinstance(outcome, ChangesetFailed)
        assert not outcome.ok
        assert pool.outstanding == 0
        with pytest.raises(error.ChangesetFatal) as excinfo:
            outcome.raise_for_outcome()
        assert excinfo.value.status == 409
        assert excinfo.value.extended_error.code == "EntityAlreadyExists"
        assert excinfo.value.reason == "1:The specified entity already exists."
        assert not excinfo.value.retryable
        assert e0.etag is None

    @pytest.mark.parametrize("status", [404, 412])
    def test_changeset_fatal_statuses(self, status):
        """A missing entity or a failed precondition is changeset fatal for an update"""
        ops = [TableOperation.replace(Entity("p", "r", etag=ETAG_1))]
        outcome = decode_batch_response(batch_response([http_part(status, "x")]), ops)
        assert isinstance(outcome, ChangesetFailed)
        assert outcome.error.status == status

    def test_per_item_failure(self):
        """Other failures are data in the outcome, at the index the service named"""
        ops = [
            TableOperation.merge(Entity("p", "r0", etag="*")),
            TableOperation.merge(Entity("p", "r1", etag="*")),
            TableOperation.merge(Entity("p", "r2", etag="*")),
        ]
        part = http_part(
            400,
            "Bad Request",
            {"Content-Type": "application/json"},
            error_body("InvalidInput", "1:One of the request inputs is not valid."),
        )
        outcome = decode_batch_response(batch_response([part]), ops)
        assert isinstance(outcome, ItemResults)
        assert not outcome.ok
        (failure,) = outcome.failures
        assert failure.index == 1
        assert failure.status == 400
        assert failure.extended_error.code == "InvalidInput"
        assert not failure.retryable
        assert len(outcome.results) == 3
        assert outcome.results[1].http_status_code == 400
        assert outcome.results[1].error.code == "InvalidInput"
        assert outcome.results[0].http_status_code == 0
        assert outcome.results[2].http_status_code == 0
        with pytest.raises(error.PerItemFailure):
            outcome.raise_for_outcome()

    def test_failure_without_index(self):
        """Without a message prefix the part position is the index"""
        ops = [TableOperation.insert_or_replace(Entity("p", "r"))]
        outcome = decode_batch_response(batch_response([http_part(500, "Server Error")]), ops)
        assert outcome.failures[0].index == 0
        assert outcome.results[0].error is None

    def test_too_many_parts(self):
        """More parts than operations is malformed"""
        ops = [TableOperation.insert(Entity("p", "r"))]
        with pytest.raises(error.MalformedWireValue):
            decode_batch_response(batch_response([no_content(ETAG_1), no_content(ETAG_1)]), ops)

    def test_too_few_parts(self):
        """Missing parts without a failure explaining them is malformed"""
        ops = [TableOperation.insert_or_replace(Entity("p", "a")), TableOperation.insert_or_replace(Entity("p", "b"))]
        with pytest.raises(error.MalformedWireValue):
            decode_batch_response(batch_response([no_content()]), ops)

    def test_cancellation(self):
        """A cancelled token aborts decoding"""
        token = CancellationToken()
        token.cancel()
        ops = [TableOperation.insert_or_replace(Entity("p", "a"))]
        with pytest.raises(error.OperationCanceled) as excinfo:
            decode_batch_response(batch_response([no_content()]), ops, cancellation=token)
        assert excinfo.value.retryable


class TestClassification:
    """Status expectations per operation kind."""

    def test_expected_status(self):
        """Inserts depend on echo, retrieves want 200, the rest 204"""
        entity = Entity("p", "r", etag="*")
        assert expected_status(TableOperation.insert(entity)) == 204
        assert expected_status(TableOperation.insert(entity, echo_content=True)) == 201
        assert expected_status(TableOperation.retrieve("p", "r")) == 200
        assert expected_status(TableOperation.delete(entity)) == 204
        assert expected_status(TableOperation.insert_or_merge(entity)) == 204

    def test_changeset_fatal(self):
        """Which statuses roll the changeset back"""
        entity = Entity("p", "r", etag="*")
        assert is_changeset_fatal(TableOperation.insert(entity), 409)
        assert not is_changeset_fatal(TableOperation.insert(entity), 404)
        assert is_changeset_fatal(TableOperation.delete(entity), 404)
        assert not is_changeset_fatal(TableOperation.retrieve("p", "r"), 404)
        assert is_changeset_fatal(TableOperation.insert_or_replace(entity), 412)
        assert not is_changeset_fatal(TableOperation.merge(entity), 400)
