"""Per-environment artifact collection, retention and comparison."""
import json
import secrets
import tarfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from rigging.artifacts.collector import (
    ARTIFACT_TYPES,
    METADATA_FILE,
    MINIMAL_TYPES,
    ArtifactCollector,
)
from rigging.artifacts.repository import ArtifactRepository
from rigging.core.errors import ArtifactError
from rigging.core.fs import directory_size, remove_path
from rigging.core.logger import get_logger
from rigging.core.state_store import JsonStateFile
from rigging.models.config import ArtifactSettings

logger = get_logger(__name__)

REGISTRY_FILE = "artifact_registry.json"
GIB = 1024 ** 3


def result_failed(test_result: Any) -> bool:
    """Whether a test result (dict or object) describes a failure."""
    if test_result is None:
        return False
    if isinstance(test_result, dict):
        success = test_result.get('success', True)
        status = test_result.get('status')
    else:
        success = getattr(test_result, 'success', True)
        status = getattr(test_result, 'status', None)
    return not success or status in ('failed', 'error')


class ArtifactManager:
    """Collects artifacts for named environments and keeps them queryable.

    Each collection is registered twice: in a flat JSON registry holding the
    newest collections per environment, and in the SQLite repository.
    """

    def __init__(self, base_dir: Path, environment_lookup: Callable[[str], Any],
                 settings: Optional[ArtifactSettings] = None):
        """Initialize artifact manager.

        Args:
            base_dir: Root directory for collections, registry and repository
            environment_lookup: Returns the environment for a name, or None
            settings: Retention and collection settings
        """
        self.base_dir = Path(base_dir)
        self.environment_lookup = environment_lookup
        self.settings = settings or ArtifactSettings()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.repository = ArtifactRepository(self.base_dir / "repository")
        self._registry_file = JsonStateFile(self.base_dir / REGISTRY_FILE)
        self._registry: Dict[str, List[Dict[str, Any]]] = self._registry_file.load()
        self._lock = threading.Lock()

    # Collection

    def collect(self, environment_name: str, test_result: Any = None,
                config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Collect artifacts from a named environment.

        A failed test result triggers the full artifact set plus an archive;
        anything else collects the minimal set without archiving.

        Returns:
            Collection metadata with collection_dir and repository_id added

        Raises:
            ArtifactError: If the environment is unknown
        """
        environment = self.environment_lookup(environment_name)
        if environment is None:
            raise ArtifactError(f"Environment not found: {environment_name}")

        failed = result_failed(test_result)
        stamp = f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"
        collection_dir = self.base_dir / environment_name / stamp

        collection_config = {
            'artifact_types': list(ARTIFACT_TYPES if failed else MINIMAL_TYPES),
            'create_archive': failed,
            'max_log_lines': self.settings.max_log_lines,
            'include_screenshots': self.settings.include_screenshots,
        }
        collection_config.update(config or {})

        logger.info(f"Collecting {'failure' if failed else 'standard'} artifacts for {environment_name}")
        collector = ArtifactCollector(environment, collection_dir, collection_config)
        metadata = collector.collect(_serializable(test_result))

        metadata['collection_dir'] = str(collection_dir)
        metadata['repository_id'] = self.repository.store(metadata, collection_dir)
        self._register(environment_name, metadata)
        return metadata

    def collect_session(self, session, session_result: Any = None) -> Dict[str, Any]:
        """Collect from every environment in a session and write a session summary."""
        logger.info(f"Collecting artifacts for session {session.session_id}")
        collections = {}
        for name in session.environment_names():
            try:
                collections[name] = self.collect(name, session_result)
            except ArtifactError as e:
                logger.error(f"Session artifact collection failed for {name}: {e}")
                collections[name] = {'errors': [str(e)], 'success': False}

        session_dir = self.base_dir / "sessions" / f"session-{session.session_id}"
        session_dir.mkdir(parents=True, exist_ok=True)
        summary = {
            'session_id': session.session_id,
            'collected_at': datetime.now().isoformat(),
            'environments': {
                name: {
                    'session_id': c.get('session_id'),
                    'success': c.get('success'),
                    'total_size': c.get('total_size', 0),
                    'collection_dir': c.get('collection_dir'),
                }
                for name, c in collections.items()
            },
        }
        with open(session_dir / "session_summary.yaml", 'w') as f:
            yaml.safe_dump(summary, f, default_flow_style=False, sort_keys=False)
        return {'session_dir': str(session_dir), 'collections': collections}

    # Registry

    def _register(self, environment_name: str, metadata: Dict[str, Any]):
        entry = {
            'session_id': metadata['session_id'],
            'repository_id': metadata['repository_id'],
            'collection_dir': metadata['collection_dir'],
            'archive_path': metadata.get('archive_path'),
            'timestamp': metadata['timestamp'],
            'success': metadata['success'],
            'duration': metadata.get('duration', 0.0),
            'total_size': metadata.get('total_size', 0),
            'artifact_types': sorted(metadata.get('artifacts', {}).keys()),
        }
        with self._lock:
            entries = self._registry.setdefault(environment_name, [])
            entries.append(entry)
            overflow = entries[:-self.settings.registry_limit]
            self._registry[environment_name] = entries[-self.settings.registry_limit:]
            self._registry_file.save(self._registry)
        for dropped in overflow:
            self._delete_files(dropped)
            self.repository.delete_collection(dropped['repository_id'])

    def _entries(self) -> List[tuple]:
        with self._lock:
            return [
                (name, entry)
                for name, entries in self._registry.items()
                for entry in entries
            ]

    def find(self, session_id: str) -> Optional[Dict[str, Any]]:
        for name, entry in self._entries():
            if entry['session_id'] == session_id:
                return dict(entry, environment=name)
        return None

    def history(self, environment_name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest-first registry entries for one environment."""
        with self._lock:
            entries = list(self._registry.get(environment_name, []))
        return list(reversed(entries))[:limit]

    # Queries

    def compare(self, session_id1: str, session_id2: str) -> Dict[str, Any]:
        """Lightweight diff of two collections.

        Returns:
            Dict with duration_delta, size_delta, success_changed, success
            (first, second), added_types, removed_types and per-file changes

        Raises:
            ArtifactError: If either collection is unknown
        """
        first, second = self._load_metadata(session_id1), self._load_metadata(session_id2)
        types1 = set(first.get('artifacts', {}))
        types2 = set(second.get('artifacts', {}))

        comparison = {
            'collection1': session_id1,
            'collection2': session_id2,
            'duration_delta': second.get('duration', 0.0) - first.get('duration', 0.0),
            'size_delta': second.get('total_size', 0) - first.get('total_size', 0),
            'success_changed': bool(first.get('success')) != bool(second.get('success')),
            'success': (first.get('success'), second.get('success')),
            'added_types': sorted(types2 - types1),
            'removed_types': sorted(types1 - types2),
        }
        if first.get('repository_id') and second.get('repository_id'):
            comparison['files'] = self.repository.compare(first['repository_id'], second['repository_id'])
        return comparison

    def _load_metadata(self, session_id: str) -> Dict[str, Any]:
        entry = self.find(session_id)
        if entry is None:
            raise ArtifactError(f"Artifact collection not found: {session_id}")
        metadata_file = Path(entry['collection_dir']) / METADATA_FILE
        metadata = dict(entry)
        if metadata_file.exists():
            with open(metadata_file) as f:
                metadata.update(json.load(f))
        metadata['repository_id'] = entry['repository_id']
        return metadata

    def search(self, query: Optional[str] = None, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self.repository.search(query, filters)

    # Retention

    def _entry_size(self, entry: Dict[str, Any]) -> int:
        size = directory_size(entry['collection_dir'])
        if entry.get('archive_path'):
            size += directory_size(entry['archive_path'])
        return size

    def _delete_files(self, entry: Dict[str, Any]) -> int:
        freed = self._entry_size(entry)
        remove_path(entry['collection_dir'])
        if entry.get('archive_path'):
            remove_path(entry['archive_path'])
        return freed

    def _remove(self, environment_name: str, entry: Dict[str, Any]) -> int:
        freed = self._delete_files(entry)
        self.repository.delete_collection(entry['repository_id'])
        with self._lock:
            remaining = [e for e in self._registry.get(environment_name, [])
                         if e['session_id'] != entry['session_id']]
            self._registry[environment_name] = remaining
            self._registry_file.save(self._registry)
        return freed

    def storage_usage(self) -> int:
        return sum(self._entry_size(entry) for _name, entry in self._entries())

    def enforce_storage_limit(self, limit_bytes: Optional[int] = None) -> Dict[str, int]:
        """Delete collections oldest-first until usage is at or under the limit.

        Returns:
            Dict with removed (count), bytes_freed and current_usage
        """
        limit = int(self.settings.storage_limit_gb * GIB) if limit_bytes is None else limit_bytes
        sized = [(name, entry, self._entry_size(entry)) for name, entry in self._entries()]
        usage = sum(size for _n, _e, size in sized)
        result = {'removed': 0, 'bytes_freed': 0, 'current_usage': usage}
        if usage <= limit:
            return result

        logger.warning(f"Artifact storage limit exceeded: {usage} > {limit} bytes")
        for name, entry, size in sorted(sized, key=lambda item: item[1]['timestamp']):
            if usage <= limit:
                break
            self._remove(name, entry)
            usage -= size
            result['removed'] += 1
            result['bytes_freed'] += size

        result['current_usage'] = usage
        logger.info(f"Storage limit enforced: {result['removed']} collections removed")
        return result

    def cleanup_older_than(self, days: Optional[float] = None) -> Dict[str, int]:
        days = self.settings.retention_days if days is None else days
        cutoff = datetime.now() - timedelta(days=days)
        removed, freed = 0, 0
        for name, entry in self._entries():
            if datetime.fromisoformat(entry['timestamp']) < cutoff:
                freed += self._remove(name, entry)
                removed += 1
        logger.info(f"Artifact cleanup completed: {removed} collections removed")
        return {'removed': removed, 'bytes_freed': freed}

    # Reporting

    def summary(self, environment_name: Optional[str] = None) -> Dict[str, Any]:
        entries = [e for name, e in self._entries() if environment_name in (None, name)]
        summary = {
            'collections': len(entries),
            'successful': sum(1 for e in entries if e['success']),
            'failed': sum(1 for e in entries if not e['success']),
            'total_size': sum(e.get('total_size', 0) for e in entries),
            'latest': max((e['timestamp'] for e in entries), default=None),
        }
        if environment_name is None:
            with self._lock:
                summary['environments'] = sorted(name for name, items in self._registry.items() if items)
        return summary

    def export(self, session_id: str, destination: Path) -> Path:
        """Write a collection as a tar.gz archive to destination."""
        entry = self.find(session_id)
        if entry is None:
            raise ArtifactError(f"Artifact collection not found: {session_id}")
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        collection_dir = Path(entry['collection_dir'])
        with tarfile.open(destination, "w:gz") as tar:
            tar.add(collection_dir, arcname=collection_dir.name)
        logger.info(f"Exported collection {session_id} to {destination}")
        return destination

    def close(self):
        self.repository.close()


def _serializable(test_result: Any) -> Any:
    if test_result is None or isinstance(test_result, (dict, str, bool, int, float)):
        return test_result
    if hasattr(test_result, 'to_dict'):
        return test_result.to_dict()
    return str(test_result)
