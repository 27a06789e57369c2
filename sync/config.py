"""Runtime settings read from environment variables."""
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sync.models import DEFAULT_CONTAINER, RemoteCredentials


@dataclass
class SyncSettings:
    """Configuration for the sync Lambda."""
    meetings_table: str = 'meetings'
    audit_table: str = 'meeting-audit'
    sync_events_table: str = 'calendar-sync-events'
    caldav_base_url: Optional[str] = None
    caldav_username: Optional[str] = None
    caldav_password: Optional[str] = None
    calendar_name: str = DEFAULT_CONTAINER
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    catch_up_limit: int = 100
    batch_max_workers: int = 4

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SyncSettings':
        env = os.environ if environ is None else environ
        return cls(
            meetings_table=env.get('MEETINGS_TABLE', 'meetings'),
            audit_table=env.get('AUDIT_TABLE', 'meeting-audit'),
            sync_events_table=env.get('SYNC_EVENTS_TABLE', 'calendar-sync-events'),
            caldav_base_url=env.get('CALDAV_BASE_URL'),
            caldav_username=env.get('CALDAV_USERNAME'),
            caldav_password=env.get('CALDAV_PASSWORD'),
            calendar_name=env.get('CALENDAR_NAME', DEFAULT_CONTAINER),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '30')),
            catch_up_limit=int(env.get('CATCH_UP_LIMIT', '100')),
            batch_max_workers=int(env.get('BATCH_MAX_WORKERS', '4')),
        )

    def resolve_credentials(
        self,
        supplied: Optional[Dict[str, Any]] = None
    ) -> Optional[RemoteCredentials]:
        """
        Pick the credentials for a call.

        Credentials supplied with the invocation win; otherwise the service
        account from the environment is used.

        Args:
            supplied: Optional dict with base_url, username and password

        Returns:
            RemoteCredentials, or None if neither source is complete
        """
        supplied = supplied or {}
        base_url = supplied.get('base_url') or self.caldav_base_url
        if base_url and supplied.get('username') and supplied.get('password'):
            return RemoteCredentials(
                base_url=base_url,
                username=supplied['username'],
                password=supplied['password'],
            )
        if self.caldav_base_url and self.caldav_username and self.caldav_password:
            return RemoteCredentials(
                base_url=self.caldav_base_url,
                username=self.caldav_username,
                password=self.caldav_password,
            )
        return None
