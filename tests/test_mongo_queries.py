"""
Unit Tests for the MongoDB query, update and pipeline builders
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from database import MongoDatabase, is_transient, new_id
from errors import CommitUnknownError, DuplicateVoteError, TransientError
from issue_store import (
    EARTH_RADIUS_KM,
    MongoIssueStore,
    build_issue_query,
    build_projection,
    build_sort,
    group_count_pipeline,
    near_query,
    update_pipeline,
)
from ledger import MongoVoteLedger, voting_stats_pipeline
from schemas import IssueFilter

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


def fake_database(collection):
    database = MagicMock()
    database.__getitem__.return_value = collection
    return database


class TestIssueQuery:

    def test_empty_filter_matches_everything(self):
        assert build_issue_query(IssueFilter()) == {}

    def test_equality_predicates(self):
        f = IssueFilter(status='pending', category='safety', priority='high', reportedBy='u1', assignedTo='a1')
        assert build_issue_query(f) == {
            'status': 'pending',
            'category': 'safety',
            'priority': 'high',
            'reportedBy': 'u1',
            'assignedTo': 'a1',
        }

    def test_text_and_geo_combine(self):
        f = IssueFilter(search='pothole', near={'lng': 3.0, 'lat': 6.0, 'radiusKm': 10})
        query = build_issue_query(f)

        assert query['$text'] == {'$search': 'pothole'}
        assert query['location'] == {'$geoWithin': {'$centerSphere': [[3.0, 6.0], 10 / EARTH_RADIUS_KM]}}

    def test_sort_adds_relevance_and_id(self):
        plain = IssueFilter(sortBy='votes', sortOrder='asc')
        assert build_sort(plain) == [('votes', ASCENDING), ('_id', ASCENDING)]
        assert build_projection(plain) is None

        searching = IssueFilter(search='drain')
        assert build_sort(searching) == [
            ('createdAt', DESCENDING),
            ('score', {'$meta': 'textScore'}),
            ('_id', DESCENDING),
        ]
        assert build_projection(searching) == {'score': {'$meta': 'textScore'}}

    def test_near_query(self):
        assert near_query(3.0, 6.0, 500) == {
            'location': {'$near': {'$geometry': {'type': 'Point', 'coordinates': [3.0, 6.0]}, '$maxDistance': 500}}
        }


class TestUpdatePipeline:

    def test_resolving_keeps_existing_timestamp(self):
        stages = update_pipeline({'status': 'resolved'}, NOW)

        assert stages == [
            {
                '$set': {
                    'status': {'$literal': 'resolved'},
                    'updatedAt': NOW,
                    'resolvedAt': {'$ifNull': ['$resolvedAt', NOW]},
                }
            }
        ]

    def test_leaving_resolved_unsets_timestamp(self):
        stages = update_pipeline({'status': 'pending'}, NOW)
        assert stages[-1] == {'$unset': ['resolvedAt']}

    def test_content_only_leaves_resolution_alone(self):
        stages = update_pipeline({'title': '$where is the fix'}, NOW)
        assert stages == [{'$set': {'title': {'$literal': '$where is the fix'}, 'updatedAt': NOW}}]

    def test_unassign(self):
        stages = update_pipeline({'assignedTo': None}, NOW)
        assert stages == [{'$set': {'updatedAt': NOW}}, {'$unset': ['assignedTo']}]


class TestPipelines:

    def test_group_count(self):
        assert group_count_pipeline('category') == [
            {'$group': {'_id': '$category', 'count': {'$sum': 1}}},
            {'$sort': {'count': -1, '_id': 1}},
        ]

    def test_group_count_scoped(self):
        assert group_count_pipeline('status', 'u1')[0] == {'$match': {'reportedBy': 'u1'}}

    def test_voting_stats(self):
        pipeline = voting_stats_pipeline()
        assert pipeline[0]['$group']['uniqueVoters'] == {'$addToSet': '$userId'}
        assert voting_stats_pipeline('u1')[0] == {'$match': {'userId': 'u1'}}


class TestMongoStores:

    async def test_duplicate_key_becomes_duplicate_vote(self):
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError('E11000 duplicate key'))
        ledger = MongoVoteLedger(fake_database(collection), clock=lambda: NOW)

        with pytest.raises(DuplicateVoteError):
            await ledger.insert('u1', 'i1')

    async def test_apply_vote_filter_is_guarded(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
        store = MongoIssueStore(fake_database(collection), clock=lambda: NOW)
        issue_id = new_id()

        assert await store.apply_vote(issue_id, 'u1', True) is True
        query, update = collection.update_one.call_args.args
        assert query == {'_id': ObjectId(issue_id), 'votedBy': {'$ne': 'u1'}}
        assert update['$inc'] == {'votes': 1}
        assert update['$push'] == {'votedBy': 'u1'}

        collection.update_one.return_value = MagicMock(modified_count=0)
        assert await store.apply_vote(issue_id, 'u1', False) is False
        query, update = collection.update_one.call_args.args
        assert query == {'_id': ObjectId(issue_id), 'votedBy': 'u1'}
        assert update['$pull'] == {'votedBy': 'u1'}


    async def test_change_fields_reads_previous_state_from_the_write(self):
        issue_id = new_id()
        stored = {
            '_id': ObjectId(issue_id),
            'title': 'Broken streetlight',
            'description': 'Dark corner near the market for weeks',
            'category': 'safety',
            'status': 'pending',
            'location': {'type': 'Point', 'coordinates': [3.3, 6.5]},
            'address': '12 Market Road',
            'reportedBy': 'u1',
            'createdAt': NOW,
            'updatedAt': NOW,
        }
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value=stored)
        collection.find_one = AsyncMock(return_value={**stored, 'status': 'in-progress'})
        store = MongoIssueStore(fake_database(collection), clock=lambda: NOW)

        before, after = await store.change_fields(issue_id, {'status': 'in-progress'})

        assert before.status == 'pending'
        assert after.status == 'in-progress'
        assert collection.find_one_and_update.call_args.kwargs['return_document'] == ReturnDocument.BEFORE

    async def test_find_many_skips_malformed_ids(self):
        collection = MagicMock()
        store = MongoIssueStore(fake_database(collection), clock=lambda: NOW)

        assert await store.find_many(['nope', 'also-nope']) == {}
        collection.find.assert_not_called()


class TestTransientClassification:

    def test_connection_errors_are_transient(self):
        assert is_transient(AutoReconnect('primary stepped down'))

    def test_labelled_errors_are_transient(self):
        exc = OperationFailure('WriteConflict', code=112, details={'errorLabels': ['TransientTransactionError']})
        assert is_transient(exc)

    def test_other_errors_are_not(self):
        assert not is_transient(OperationFailure('bad query', code=2, details={}))


def mongo_with_session(commit_side_effect):
    session = MagicMock()
    session.start_transaction = AsyncMock()
    session.commit_transaction = AsyncMock(side_effect=commit_side_effect)
    session.abort_transaction = AsyncMock()
    session.in_transaction = True
    client = MagicMock()
    client.start_session.return_value.__aenter__.return_value = session
    client.start_session.return_value.__aexit__.return_value = False
    return MongoDatabase('mongodb://unused', 'fixmyarea', client=client, commit_retries=2), session


def unknown_commit():
    return OperationFailure(
        'commit timed out', code=50, details={'errorLabels': ['UnknownTransactionCommitResult']}
    )


class TestMongoTransaction:

    async def test_unknown_commit_retries_only_the_commit(self):
        database, session = mongo_with_session([unknown_commit(), None])
        work = []

        async with database.transaction() as s:
            work.append(s)

        assert work == [session]
        assert session.commit_transaction.await_count == 2
        session.abort_transaction.assert_not_awaited()

    async def test_unknown_commit_that_never_resolves(self):
        database, session = mongo_with_session([unknown_commit()] * 3)

        with pytest.raises(CommitUnknownError):
            async with database.transaction():
                pass

        assert session.commit_transaction.await_count == 3

    async def test_transient_failure_inside_work_aborts(self):
        database, session = mongo_with_session([None])
        conflict = OperationFailure('WriteConflict', code=112, details={'errorLabels': ['TransientTransactionError']})

        with pytest.raises(TransientError):
            async with database.transaction():
                raise conflict

        session.abort_transaction.assert_awaited_once()
        session.commit_transaction.assert_not_awaited()

    def test_unknown_commit_is_not_a_transient_retry(self):
        assert not is_transient(unknown_commit())
