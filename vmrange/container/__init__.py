"""
Container decorators and helpers.
"""

from typing import TYPE_CHECKING, Any, TypeVar

import fmf
from pydantic import BaseModel, ConfigDict, ValidationError
from typing_extensions import Self

if TYPE_CHECKING:
    from typing_extensions import TypeAlias


# `container` is an alias for `dataclass`, imported this way so type
# checkers recognize it as such.
from dataclasses import dataclass as container  # noqa: E402
from dataclasses import field as simple_field  # noqa: E402

__all__ = [
    'MetadataContainer',
    'container',
    'key_to_option',
    'simple_field',
]


def key_to_option(key: str) -> str:
    """
    Convert a key name to corresponding option name
    """

    return key.replace('_', '-')


MetadataContainerT = TypeVar(
    'MetadataContainerT',
    bound='MetadataContainer',
)

#: Raw data a metadata container is loaded from.
RawMetadata: 'TypeAlias' = dict[str, Any]


class MetadataContainer(BaseModel):
    """
    A base class of containers backed by fmf nodes or YAML mappings.
    """

    # Accept only keys with dashes instead of underscores
    model_config = ConfigDict(
        alias_generator=key_to_option,
        populate_by_name=True,
        extra='forbid',
        validate_default=True,
        validate_assignment=True,
    )

    @classmethod
    def from_fmf(cls, tree: fmf.Tree) -> Self:
        try:
            return cls.model_validate(tree.data)

        except ValidationError as error:
            import vmrange.utils

            raise vmrange.utils.SpecificationError(
                f"Invalid metadata in '{tree.name}'."
            ) from error

    @classmethod
    def from_spec(cls, spec: RawMetadata, origin: str = 'data') -> Self:
        try:
            return cls.model_validate(spec)

        except ValidationError as error:
            import vmrange.utils

            raise vmrange.utils.SpecificationError(f'Invalid metadata in {origin}.') from error

    @classmethod
    def from_yaml(cls, yaml: str) -> Self:
        import vmrange.utils

        return cls.from_spec(vmrange.utils.yaml_to_dict(yaml), origin='YAML data')
