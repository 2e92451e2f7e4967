"""
Artifact bundles - the generated files one pipeline run ships.

A bundle is either loaded from a directory (bundle.yaml manifest plus the
files next to it) or produced by ArtifactGenerator implementations from a
specification mapping. Generators are pure: identical specifications give
identical artifacts.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import yaml

logger = logging.getLogger(__name__)

MANIFEST_NAME = "bundle.yaml"
SKIP_DIRS = {".git", "__pycache__", ".venv", "node_modules"}


class BundleError(Exception):
    """Bundle directory or manifest is invalid."""
    pass


@dataclass(frozen=True)
class ArtifactFile:
    path: str
    content: str

    def __post_init__(self):
        if not self.path or self.path.startswith("/") or ".." in Path(self.path).parts:
            raise ValueError(f"Artifact path must be relative and inside the bundle: {self.path!r}")

    @property
    def line_count(self) -> int:
        return len(self.content.splitlines())


@dataclass(frozen=True)
class ArtifactBundle:
    """
    The complete set of generated files for one template instance.

    Attributes:
        name: Declared artifact name (sanitized into a repository name)
        owner: Owning team or user
        description: One-line description
        version: Artifact version
        files: Files to commit, unique by path
        metadata: Extra manifest fields (tags, type, ...)
    """
    name: str
    owner: str
    description: str = ""
    version: str = "1.0.0"
    files: tuple[ArtifactFile, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Artifact bundle requires a name")
        seen: set[str] = set()
        for f in self.files:
            if f.path in seen:
                raise ValueError(f"Duplicate artifact path: {f.path}")
            seen.add(f.path)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    def get(self, path: str) -> ArtifactFile | None:
        for f in self.files:
            if f.path == path:
                return f
        return None

    def as_mapping(self) -> dict[str, str]:
        return {f.path: f.content for f in self.files}

    def with_files(self, extra: Iterable[ArtifactFile]) -> "ArtifactBundle":
        """Copy of this bundle with extra files appended (existing paths win)."""
        files = list(self.files)
        existing = set(self.paths)
        for f in extra:
            if f.path not in existing:
                files.append(f)
                existing.add(f.path)
        return ArtifactBundle(
            name=self.name,
            owner=self.owner,
            description=self.description,
            version=self.version,
            files=tuple(files),
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "owner": self.owner,
            "description": self.description,
            "version": self.version,
            "files": self.paths,
            "metadata": dict(self.metadata),
        }


@runtime_checkable
class ArtifactGenerator(Protocol):
    """
    Protocol for artifact generators.

    A generator turns a specification into one or more files. The
    configuration-file, file-tree, rule-list and documentation generators
    all satisfy it.
    """

    name: str

    def generate(self, specification: Mapping[str, Any]) -> Sequence[ArtifactFile]:
        ...


def load_bundle(path: Path) -> ArtifactBundle:
    """
    Load a bundle from a directory.

    The directory holds an optional bundle.yaml manifest (name, owner,
    description, version, plus any extra metadata keys) and the files to
    commit. Without a manifest the directory name is the artifact name.

    Raises:
        BundleError: If the directory is missing, empty or has a bad manifest
    """
    path = Path(path)
    if not path.is_dir():
        raise BundleError(f"Bundle directory not found: {path}")

    manifest: dict[str, Any] = {}
    manifest_path = path / MANIFEST_NAME
    if manifest_path.exists():
        try:
            manifest = yaml.safe_load(manifest_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise BundleError(f"Invalid {MANIFEST_NAME}: {e}")
        if not isinstance(manifest, dict):
            raise BundleError(f"{MANIFEST_NAME} must be a mapping")

    files = []
    for file_path in sorted(path.rglob("*")):
        if not file_path.is_file() or file_path == manifest_path:
            continue
        rel = file_path.relative_to(path)
        if any(part in SKIP_DIRS for part in rel.parts):
            continue
        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise BundleError(f"Bundle files must be UTF-8 text: {rel}")
        files.append(ArtifactFile(path=rel.as_posix(), content=content))

    if not files:
        raise BundleError(f"Bundle directory has no files: {path}")

    known = {"name", "owner", "description", "version"}
    bundle = ArtifactBundle(
        name=str(manifest.get("name") or path.name),
        owner=str(manifest.get("owner") or "platform-team"),
        description=str(manifest.get("description") or ""),
        version=str(manifest.get("version") or "1.0.0"),
        files=tuple(files),
        metadata={k: v for k, v in manifest.items() if k not in known},
    )
    logger.debug(f"Loaded bundle {bundle.name} with {len(files)} files from {path}")
    return bundle


def generate_bundle(
    specification: Mapping[str, Any],
    generators: Sequence[ArtifactGenerator],
) -> ArtifactBundle:
    """
    Run every generator over the specification and collect the files.

    Raises:
        ValueError: If the specification has no name or generators collide on a path
        Exception: Whatever a generator raises propagates unchanged
    """
    files: list[ArtifactFile] = []
    for generator in generators:
        produced = generator.generate(specification)
        logger.debug(f"Generator {generator.name} produced {len(produced)} files")
        files.extend(produced)

    return ArtifactBundle(
        name=str(specification.get("name") or ""),
        owner=str(specification.get("owner") or "platform-team"),
        description=str(specification.get("description") or ""),
        version=str(specification.get("version") or "1.0.0"),
        files=tuple(files),
        metadata={"generated": True, "generators": [g.name for g in generators]},
    )


def minimal_bundle(specification: Mapping[str, Any]) -> ArtifactBundle:
    """Smallest usable bundle for a specification: template, catalog entry, README."""
    name = str(specification.get("name") or "unnamed-template")
    owner = str(specification.get("owner") or "platform-team")
    description = str(specification.get("description") or f"Template for {name}")

    template = {
        "apiVersion": "scaffolder.backstage.io/v1beta3",
        "kind": "Template",
        "metadata": {"name": name, "title": name, "description": description},
        "spec": {
            "owner": owner,
            "type": "service",
            "parameters": [
                {
                    "title": "Basic information",
                    "required": ["name"],
                    "properties": {"name": {"title": "Name", "type": "string"}},
                }
            ],
            "steps": [
                {
                    "id": "fetch",
                    "name": "Fetch skeleton",
                    "action": "fetch:template",
                    "input": {"url": "./skeleton", "values": {"name": "${{ parameters.name }}"}},
                }
            ],
        },
    }
    catalog = {
        "apiVersion": "backstage.io/v1alpha1",
        "kind": "Component",
        "metadata": {"name": name, "description": description},
        "spec": {"type": "template", "owner": owner, "lifecycle": "experimental"},
    }
    readme = f"# {name}\n\n{description}\n\nThis is a minimal template. Extend it before production use.\n"

    return ArtifactBundle(
        name=name,
        owner=owner,
        description=description,
        version=str(specification.get("version") or "1.0.0"),
        files=(
            ArtifactFile("template.yaml", yaml.safe_dump(template, sort_keys=False)),
            ArtifactFile("catalog-info.yaml", yaml.safe_dump(catalog, sort_keys=False)),
            ArtifactFile("README.md", readme),
        ),
        metadata={"minimal": True},
    )
