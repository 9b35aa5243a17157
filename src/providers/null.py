"""null provider: resources with no external side effects."""

import uuid

from providers.base import ProviderPlugin, Resource, ResourceSchema


class NullResource(Resource):
    """Does nothing; replaced whenever its triggers change."""

    schema = ResourceSchema(force_new=frozenset({'triggers'}), computed=frozenset({'id'}))

    def create(self, attrs: dict) -> tuple[dict, str]:
        resource_id = uuid.uuid4().hex
        return {**attrs, 'id': resource_id}, resource_id

    def read(self, attrs: dict) -> dict:
        return dict(attrs)

    def update(self, old: dict, new: dict) -> dict:
        return self.keep_computed(old, new)

    def delete(self, attrs: dict) -> None:
        return None


class NullProvider(ProviderPlugin):
    name = 'null'
    version = '3.2.1'
    resources = {'null_resource': NullResource}
