"""
Publication gate: a course is publishable only with at least one section.
"""
import pytest

from curriculum.errors import BadRequest, NotFound

from support import seed_course


def test_publish_requires_a_section(services):
    course, _ = seed_course(services)
    with pytest.raises(BadRequest) as exc:
        services.publication.publish(course.id)
    assert exc.value.code == "course_has_no_sections"
    assert services.hierarchy.get_course(course.id).status == "draft"

    services.hierarchy.create_section(course.id, title="Getting started")
    assert services.publication.publish(course.id).status == "published"


def test_publish_and_unpublish_round_trip(services):
    course, _ = seed_course(services, sections=1)
    assert services.publication.publish(course.id).status == "published"
    with pytest.raises(BadRequest) as exc:
        services.publication.publish(course.id)
    assert exc.value.code == "already_published"

    assert services.publication.unpublish(course.id).status == "draft"
    with pytest.raises(BadRequest) as exc:
        services.publication.unpublish(course.id)
    assert exc.value.code == "already_draft"


def test_publication_of_missing_course(services):
    with pytest.raises(NotFound):
        services.publication.publish("missing")
    with pytest.raises(NotFound):
        services.publication.unpublish("missing")
