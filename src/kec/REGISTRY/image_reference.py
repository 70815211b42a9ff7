# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Image reference parsing and normalization.
Parses references like 'maven' or 'docker.io/library/maven:3' into their
domain, path, tag and digest components so policy rules can match on them.
"""

import re
from typing import Optional
from dataclasses import dataclass, field


# Does not handle references carrying both a tag and a digest, the digest is
# split off before matching.
IMAGE_REF_PATTERN = re.compile(
    r"(?P<Name>"
    r"(?:(?P<Domain>(?:(?:localhost|[\w-]+(?:\.[\w-]+)+)(?::\d+)?)|\w+:\d+)/)?"
    r"/?"
    r"(?P<Namespace>(?:(?:[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)/)*)"
    r"(?P<Repo>[a-z0-9-]+))"
    r"[:@]?"
    r"(?P<Reference>(?<=:)(?P<Tag>\w[\w.-]{0,127})"
    r"|(?<=@)(?P<Digest>[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9A-Fa-f]{32,}))?",
    re.ASCII,
)


@dataclass(frozen=True)
class ImageReference:
    """
    Normalized container image reference.

    Examples:
        - maven -> docker.io/library/maven:latest
        - docker.io/maven -> docker.io/library/maven:latest
        - maven:3 -> docker.io/library/maven:3
        - gcr.io/project/image@sha256:abc123... -> gcr.io/project/image@sha256:abc123...

    References that are not technically valid may still parse. The purpose is
    to break a reference into pieces so rules can be applied against them,
    strict validation is left to the cluster.
    """

    domain: str
    path: str
    tag: Optional[str] = None
    digest: Optional[str] = None
    name: str = field(init=False, compare=False)
    reference: str = field(init=False, compare=False)

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_NAMESPACE = "library/"
    DEFAULT_TAG = "latest"

    def __post_init__(self):
        name = f"{self.domain}/{self.path}"
        reference = name
        if self.tag is not None:
            reference += f":{self.tag}"
        if self.digest is not None:
            reference += f"@{self.digest}"
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "reference", reference)

    @classmethod
    def parse(cls, reference: str) -> Optional["ImageReference"]:
        """
        Parse and normalize an image reference string.

        Args:
            reference: Image reference string (e.g., 'maven', 'example.com/maven:3')

        Returns:
            Parsed ImageReference, or None if the string is not an image reference.
        """
        if not reference:
            return None

        # Handle digest format (image@sha256:...)
        digest = None
        parts = [p for p in reference.split("@") if p]
        if len(parts) == 2:
            reference, digest = parts

        match = IMAGE_REF_PATTERN.fullmatch(reference)
        if not match:
            return None

        domain = match.group("Domain") or cls.DEFAULT_REGISTRY

        namespace = match.group("Namespace")
        if not namespace and domain == cls.DEFAULT_REGISTRY:
            namespace = cls.DEFAULT_NAMESPACE
        path = f"{namespace or ''}{match.group('Repo')}"

        tag = match.group("Tag")
        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(domain=domain, path=path, tag=tag or None, digest=digest)

    def __str__(self) -> str:
        return self.reference

    def __repr__(self) -> str:
        return f"ImageReference({self.reference})"
