"""
Unit Tests for the Alumni Record Store
Tests for: uniqueness, field-level merge, attachment precedence, delete, listing
"""
import json

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from alumni_store import AlumniStore, parse_nested
from exceptions import DuplicateRecordError, ResourceNotFoundError, StorageError, ValidationError


def base_payload(**overrides):
    payload = {
        'name': 'Jane Doe',
        'program': 'B.Tech CS',
        'passingYear': '2019-20',
        'registrationNumber': 'REG-001',
    }
    payload.update(overrides)
    return payload


class TestCreateAlumni:
    """Test record creation"""

    def test_create_without_attachments(self, store):
        record = store.create_alumni(base_payload(), actor_id='user-1')

        assert record['id']
        assert record['name'] == 'Jane Doe'
        assert record['qualifiedExams']['certificateUrl'] == ''
        assert record['createdBy'] == 'user-1'
        assert record['createdAt'] == record['updatedAt']

    def test_create_fills_uniform_shape(self, store):
        record = store.create_alumni(base_payload())

        assert record['academicUnit'] == ''
        assert record['contactDetails'] == {'email': '', 'phone': '', 'address': ''}
        assert set(record['employment']) == {
            'type', 'employerName', 'employerContact',
            'employerEmail', 'documentUrl', 'selfEmploymentDetails',
        }
        assert record['higherEducation']['documentUrl'] == ''

    @pytest.mark.parametrize('missing', ['name', 'program', 'passingYear', 'registrationNumber'])
    def test_create_missing_required_field(self, store, missing):
        payload = base_payload()
        payload[missing] = ''

        with pytest.raises(ValidationError) as exc_info:
            store.create_alumni(payload)

        assert exc_info.value.details['field'] == missing
        assert store.collection.count_documents({}) == 0

    def test_create_accepts_json_encoded_sections(self, store):
        record = store.create_alumni(base_payload(
            contactDetails=json.dumps({'email': 'jane@example.com', 'phone': '12345'}),
            employment={'type': 'Employed', 'employerName': 'Acme'},
        ))

        assert record['contactDetails']['email'] == 'jane@example.com'
        assert record['contactDetails']['address'] == ''
        assert record['employment']['employerName'] == 'Acme'

    def test_malformed_section_is_treated_as_absent(self, store):
        record = store.create_alumni(base_payload(employment='{not json'))

        assert record['employment']['type'] == ''

    def test_malformed_section_rejected_in_strict_mode(self, mongo_db):
        strict_store = AlumniStore(mongo_db, strict_nested_json=True)

        with pytest.raises(ValidationError) as exc_info:
            strict_store.create_alumni(base_payload(employment='{not json'))

        assert exc_info.value.details['field'] == 'employment'

    def test_unknown_nested_keys_are_dropped(self, store):
        record = store.create_alumni(base_payload(
            higherEducation={'institutionName': 'MIT', 'gpa': '4.0'},
        ))

        assert 'gpa' not in record['higherEducation']

    def test_uploaded_url_beats_payload_url(self, store):
        record = store.create_alumni(
            base_payload(qualifiedExams={'examName': 'GATE', 'certificateUrl': 'http://payload/cert.png'}),
            uploaded_files={'qualificationImage': 'http://uploads/cert.png'},
        )

        assert record['qualifiedExams']['certificateUrl'] == 'http://uploads/cert.png'
        assert record['qualifiedExams']['examName'] == 'GATE'

    def test_payload_url_used_without_upload(self, store):
        record = store.create_alumni(
            base_payload(employment={'type': 'Employed', 'documentUrl': 'http://payload/offer.pdf'}),
        )

        assert record['employment']['documentUrl'] == 'http://payload/offer.pdf'

    def test_passing_year_format_enforced_when_enabled(self, mongo_db):
        strict_store = AlumniStore(mongo_db, enforce_passing_year_format=True)

        with pytest.raises(ValidationError):
            strict_store.create_alumni(base_payload(passingYear='2019'))


class TestRegistrationUniqueness:
    """Test that registrationNumber stays unique"""

    def test_duplicate_create_rejected(self, store):
        store.create_alumni(base_payload())

        with pytest.raises(DuplicateRecordError):
            store.create_alumni(base_payload(name='John Roe'))

        assert store.collection.count_documents({}) == 1

    def test_unique_index_is_authoritative(self, store, monkeypatch):
        """A request that slipped past the pre-check still gets DuplicateRecordError"""
        store.create_alumni(base_payload())
        monkeypatch.setattr(store, '_ensure_registration_available', lambda *args, **kwargs: None)

        with pytest.raises(DuplicateRecordError):
            store.create_alumni(base_payload(name='John Roe'))

        assert store.collection.count_documents({'registrationNumber': 'REG-001'}) == 1

    def test_repeated_creates_only_one_succeeds(self, store):
        outcomes = []
        for i in range(5):
            try:
                store.create_alumni(base_payload(name=f'Attempt {i}'))
                outcomes.append('ok')
            except DuplicateRecordError:
                outcomes.append('duplicate')

        assert outcomes.count('ok') == 1
        assert outcomes.count('duplicate') == 4

    def test_update_to_taken_registration_number(self, store):
        store.create_alumni(base_payload())
        other = store.create_alumni(base_payload(registrationNumber='REG-002'))

        with pytest.raises(DuplicateRecordError):
            store.update_alumni(other['id'], {'registrationNumber': 'REG-001'})

    def test_update_keeping_own_registration_number(self, store):
        record = store.create_alumni(base_payload())

        updated = store.update_alumni(record['id'], {'registrationNumber': 'REG-001', 'name': 'Jane D.'})

        assert updated['name'] == 'Jane D.'


class UnreachableCollection:
    """Collection whose every call fails as if no MongoDB server answered"""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError('No servers found yet')
        return fail


class TestDatabaseFailures:
    """Test that driver errors surface as StorageError"""

    @pytest.fixture
    def offline_store(self, store, monkeypatch):
        monkeypatch.setattr(AlumniStore, 'collection', property(lambda self: UnreachableCollection()))
        return store

    def test_create(self, offline_store):
        with pytest.raises(StorageError) as exc_info:
            offline_store.create_alumni(base_payload())

        assert exc_info.value.status_code == 500
        assert exc_info.value.details['operation'] == 'create'

    def test_update(self, offline_store):
        with pytest.raises(StorageError):
            offline_store.update_alumni('0123456789abcdef01234567', {'name': 'X'})

    def test_get(self, offline_store):
        with pytest.raises(StorageError):
            offline_store.get_alumni('0123456789abcdef01234567')

    def test_list_and_search(self, offline_store):
        with pytest.raises(StorageError):
            offline_store.list_alumni()
        with pytest.raises(StorageError):
            offline_store.search_alumni('jane')


class TestUpdateAlumni:
    """Test partial updates"""

    def test_partial_nested_update_keeps_other_leaves(self, store):
        record = store.create_alumni(base_payload(employment={'type': 'Employed', 'employerName': 'Acme'}))

        updated = store.update_alumni(record['id'], {'employment': {'type': 'Unemployed'}})

        assert updated['employment']['type'] == 'Unemployed'
        assert updated['employment']['employerName'] == 'Acme'
        stored = store.get_alumni(record['id'])
        assert stored['employment']['employerName'] == 'Acme'

    def test_omitted_scalars_are_retained(self, store):
        record = store.create_alumni(base_payload(academicUnit='School of Engineering'))

        updated = store.update_alumni(record['id'], {'program': 'M.Tech CS', 'name': ''})

        assert updated['program'] == 'M.Tech CS'
        assert updated['name'] == 'Jane Doe'
        assert updated['academicUnit'] == 'School of Engineering'

    def test_upload_beats_payload_on_update(self, store):
        record = store.create_alumni(base_payload(qualifiedExams={'certificateUrl': 'http://old/cert.png'}))

        updated = store.update_alumni(
            record['id'],
            {'qualifiedExams': {'certificateUrl': 'http://payload/cert.png'}},
            uploaded_files={'qualificationImage': 'http://uploads/new-cert.png'},
        )

        assert updated['qualifiedExams']['certificateUrl'] == 'http://uploads/new-cert.png'

    def test_stored_url_kept_when_nothing_new(self, store):
        record = store.create_alumni(base_payload(higherEducation={'documentUrl': 'http://old/degree.pdf'}))

        updated = store.update_alumni(record['id'], {'higherEducation': {'programName': 'MBA'}})

        assert updated['higherEducation']['documentUrl'] == 'http://old/degree.pdf'
        assert updated['higherEducation']['programName'] == 'MBA'

    def test_update_advances_updated_at_only(self, store):
        record = store.create_alumni(base_payload())

        updated = store.update_alumni(record['id'], {'name': 'Jane D.'})

        assert updated['updatedAt'] > record['updatedAt']
        assert updated['createdBy'] == record['createdBy']

    def test_update_unknown_id(self, store):
        with pytest.raises(ResourceNotFoundError):
            store.update_alumni('0123456789abcdef01234567', {'name': 'Nobody'})

    def test_update_malformed_id(self, store):
        with pytest.raises(ResourceNotFoundError):
            store.update_alumni('not-an-id', {'name': 'Nobody'})


class TestDeleteAlumni:
    """Test deletion"""

    def test_delete_then_get(self, store):
        record = store.create_alumni(base_payload())

        store.delete_alumni(record['id'])

        with pytest.raises(ResourceNotFoundError):
            store.get_alumni(record['id'])

    def test_double_delete_is_not_found(self, store):
        record = store.create_alumni(base_payload())
        store.delete_alumni(record['id'])

        with pytest.raises(ResourceNotFoundError):
            store.delete_alumni(record['id'])

    def test_registration_number_reusable_after_delete(self, store):
        record = store.create_alumni(base_payload())
        store.delete_alumni(record['id'])

        again = store.create_alumni(base_payload())

        assert again['id'] != record['id']


class TestListAndSearch:
    """Test listing, pagination, search and stats"""

    @pytest.fixture
    def populated(self, store):
        for i in range(23):
            store.create_alumni(base_payload(
                name=f'Alumnus {i:02d}',
                registrationNumber=f'REG-{i:03d}',
                academicUnit='Engineering' if i % 2 == 0 else 'Management',
                program='B.Tech CS' if i % 3 == 0 else 'MBA',
                passingYear='2019-20' if i < 10 else '2020-21',
            ))
        return store

    @pytest.mark.parametrize('page,expected', [(1, 5), (2, 5), (4, 5), (5, 3), (6, 0)])
    def test_pagination_sizes(self, populated, page, expected):
        result = populated.list_alumni(page=page, page_size=5)

        assert len(result['data']) == expected
        assert result['pagination']['total'] == 23
        assert result['pagination']['totalPages'] == 5

    def test_newest_first(self, populated):
        result = populated.list_alumni(page=1, page_size=3)

        assert [r['name'] for r in result['data']] == ['Alumnus 22', 'Alumnus 21', 'Alumnus 20']

    def test_equality_filters(self, populated):
        result = populated.list_alumni(academic_unit='Engineering', passing_year='2019-20', page_size=50)

        assert result['pagination']['total'] == 5
        assert all(r['academicUnit'] == 'Engineering' for r in result['data'])

    def test_all_filter_is_ignored(self, populated):
        result = populated.list_alumni(academic_unit='all', passing_year='all')

        assert result['pagination']['total'] == 23

    def test_program_substring_is_case_insensitive(self, populated):
        result = populated.list_alumni(program='b.tech', page_size=50)

        assert result['pagination']['total'] == 8

    def test_page_size_defaults(self, populated):
        assert populated.list_alumni(page=0, page_size=0)['pagination']['limit'] == 10

    def test_oversized_page_size_rejected(self, populated):
        with pytest.raises(ValidationError):
            populated.list_alumni(page_size=101)

    def test_largest_page_size_returns_everything(self, store):
        for i in range(100):
            store.create_alumni(base_payload(registrationNumber=f'REG-{i:03d}'))

        result = store.list_alumni(page=1, page_size=100)

        assert len(result['data']) == 100
        assert result['pagination']['totalPages'] == 1

    def test_empty_store(self, store):
        result = store.list_alumni()

        assert result['data'] == []
        assert result['pagination']['totalPages'] == 0

    def test_search_across_fields(self, populated):
        assert len(populated.search_alumni('alumnus 1')) == 10
        assert len(populated.search_alumni('reg-007')) == 1
        assert len(populated.search_alumni('mba', academic_unit='Management')) > 0

    def test_search_requires_query(self, store):
        with pytest.raises(ValidationError):
            store.search_alumni('   ')

    def test_search_treats_query_literally(self, populated):
        assert populated.search_alumni('.*') == []

    def test_stats(self, store):
        store.create_alumni(base_payload(academicUnit='Engineering', employment={'type': 'Employed'}))
        store.create_alumni(base_payload(registrationNumber='REG-002', academicUnit='Engineering',
                                         higherEducation={'institutionName': 'MIT'}))
        store.create_alumni(base_payload(registrationNumber='REG-003', academicUnit='Law',
                                         passingYear='2020-21'))

        stats = store.alumni_stats()

        assert stats['totalAlumni'] == 3
        assert stats['byAcademicUnit'] == {'Engineering': 2, 'Law': 1}
        assert stats['byPassingYear'] == {'2019-20': 2, '2020-21': 1}
        assert stats['employmentRate'] == 33
        assert stats['higherEducationRate'] == 33

    def test_stats_empty(self, store):
        stats = store.alumni_stats()

        assert stats['employmentRate'] == 0
        assert stats['higherEducationRate'] == 0


class TestParseNested:
    """Test nested section parsing"""

    def test_dict_passthrough(self):
        assert parse_nested('employment', {'type': 'Employed'}) == {'type': 'Employed'}

    def test_absent_values(self):
        assert parse_nested('employment', None) is None
        assert parse_nested('employment', '') is None

    def test_json_array_is_not_a_section(self):
        assert parse_nested('employment', '[1, 2]') is None


def test_scenario_create_duplicate_update(store):
    """Create, collide, then merge an employment update"""
    created = store.create_alumni(base_payload())
    assert created['qualifiedExams']['certificateUrl'] == ''

    with pytest.raises(DuplicateRecordError):
        store.create_alumni(base_payload())

    updated = store.update_alumni(created['id'], {'employment': {'type': 'Employed', 'employerName': 'Acme'}})

    assert updated['employment']['type'] == 'Employed'
    assert updated['employment']['employerName'] == 'Acme'
    for field in ('name', 'academicUnit', 'program', 'passingYear', 'registrationNumber',
                  'contactDetails', 'qualifiedExams', 'higherEducation', 'createdBy'):
        assert updated[field] == created[field]
    assert updated['updatedAt'] > created['updatedAt']
