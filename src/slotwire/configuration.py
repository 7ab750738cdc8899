# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from dataclasses import dataclass, fields
from os import PathLike
from pathlib import Path
from typing import Any, ClassVar, Self

from lxml import etree

from .codec import FRAME_OVERHEAD, MAX_MESSAGE_BYTES, MAX_SLOT_BYTES

__all__ = 'Configuration',  # noqa: COM818


@dataclass(frozen=True, kw_only=True)
class Configuration:
    """
    Protocol tunables.

    The configuration can be loaded from an XML document that has a
    ``slotwire`` root element with one child element per setting, named
    after the setting with dashes instead of underscores:

        <slotwire>
          <max-slot-bytes>4000</max-slot-bytes>
          <request-timeout>10</request-timeout>
          <reassembly-timeout/>
        </slotwire>

    Settings that are missing keep their default value. An empty element
    disables the settings that accept None.
    """

    max_slot_bytes: int = MAX_SLOT_BYTES
    frame_overhead: int = FRAME_OVERHEAD
    request_timeout: float = 30.0
    handshake_timeout: float = 30.0
    reassembly_timeout: float | None = 60.0
    max_message_bytes: int = MAX_MESSAGE_BYTES

    root_tag: ClassVar[str] = 'slotwire'

    _integer_settings_: ClassVar[frozenset[str]] = frozenset({'max_slot_bytes', 'frame_overhead', 'max_message_bytes'})
    _optional_settings_: ClassVar[frozenset[str]] = frozenset({'reassembly_timeout'})

    def __post_init__(self) -> None:
        if self.frame_overhead < 0:
            raise ValueError('frame_overhead must be a non-negative integer')
        if self.max_slot_bytes <= self.frame_overhead:
            raise ValueError('max_slot_bytes must be larger than frame_overhead')
        if self.request_timeout <= 0:
            raise ValueError('request_timeout must be a positive number')
        if self.handshake_timeout <= 0:
            raise ValueError('handshake_timeout must be a positive number')
        if self.reassembly_timeout is not None and self.reassembly_timeout <= 0:
            raise ValueError('reassembly_timeout must be a positive number or None')
        if self.max_message_bytes < 1:
            raise ValueError('max_message_bytes must be a positive integer')

    @property
    def chunk_size(self) -> int:
        """The payload bytes available in a frame after reserving the frame overhead"""
        return self.max_slot_bytes - self.frame_overhead

    @classmethod
    def from_string(cls, data: str | bytes) -> Self:
        try:
            root = etree.fromstring(data)
        except etree.XMLSyntaxError as exc:
            raise ValueError(f'Invalid configuration document: {exc}') from exc
        return cls.from_element(root)

    @classmethod
    def from_file(cls, path: str | PathLike[str]) -> Self:
        return cls.from_string(Path(path).expanduser().read_bytes())

    @classmethod
    def from_element(cls, root: etree._Element) -> Self:
        if etree.QName(root).localname != cls.root_tag:
            raise ValueError(f'The configuration root element must be {cls.root_tag!r}, not {etree.QName(root).localname!r}')
        known_fields = {field.name.replace('_', '-'): field for field in fields(cls)}
        settings: dict[str, Any] = {}
        for element in root.iterchildren(tag=etree.Element):
            tag = etree.QName(element).localname
            try:
                field = known_fields[tag]
            except KeyError:
                raise ValueError(f'Unknown configuration setting: {tag!r}') from None
            if tag in settings:
                raise ValueError(f'Duplicate configuration setting: {tag!r}')
            settings[tag] = cls._parse_value(field.name, (element.text or '').strip())
        return cls(**{name.replace('-', '_'): value for name, value in settings.items()})

    def to_string(self) -> str:
        root = etree.Element(self.root_tag)
        for field in fields(self):
            element = etree.SubElement(root, field.name.replace('_', '-'))
            value = getattr(self, field.name)
            if value is not None:
                element.text = str(value)
        return etree.tostring(root, pretty_print=True, encoding='unicode')

    @classmethod
    def _parse_value(cls, name: str, text: str) -> int | float | None:
        if not text:
            if name in cls._optional_settings_:
                return None
            raise ValueError(f'The {name!r} setting requires a value')
        converter = int if name in cls._integer_settings_ else float
        try:
            return converter(text)
        except ValueError as exc:
            raise ValueError(f'Invalid value for the {name!r} setting: {text!r}') from exc
