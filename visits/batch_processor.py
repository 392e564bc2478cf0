import json
import logging
import time

from django.db import transaction
from django.utils import timezone
from redis import Redis
from redis.exceptions import RedisError

from .conf import visits_setting
from .events import apply_event_side_effects, build_event, insert_new_events
from .models import Event

logger = logging.getLogger(__name__)


class BatchEventProcessor:
    """
    Redis-backed FIFO of events waiting to be bulk inserted.

    A flush happens when the queue reaches ``batch_size`` events or when
    ``flush_interval`` seconds have passed since the previous flush, whichever
    comes first. The size check runs on every enqueue; the time check runs on
    enqueue and on the ``flush_event_queue`` beat tick, which also covers a
    queue that stops receiving events.
    """
    def __init__(self, redis_client=None, batch_size=None, flush_interval=None):
        self.redis_client = redis_client or Redis.from_url(
            visits_setting('REDIS_URL'), decode_responses=True
        )
        self.batch_size = batch_size or visits_setting('BATCH_SIZE')
        self.flush_interval = flush_interval or visits_setting('BATCH_FLUSH_SECONDS')
        self.event_queue_key = 'visits:event_queue'
        self.processing_lock_key = 'visits:processing_lock'
        self.last_flush_key = 'visits:last_flush'

    def queue_event(self, event_data):
        """Queue an event; returns the queue length once any triggered flush is done"""
        try:
            if 'queued_at' not in event_data:
                event_data['queued_at'] = timezone.now().isoformat()

            self.redis_client.lpush(
                self.event_queue_key,
                json.dumps(event_data, default=str)
            )
            # First event ever queued starts the flush clock
            self.redis_client.set(self.last_flush_key, time.time(), nx=True)

            if self.queue_size() >= self.batch_size or self.flush_due():
                self.flush()
            return self.queue_size()
        except RedisError as e:
            logger.error(f"Failed to queue event {event_data.get('event_id')}: {e}")
            # Fallback to immediate processing
            self.process_single_event(event_data)
            return 0

    def queue_size(self):
        return self.redis_client.llen(self.event_queue_key)

    def flush_due(self):
        last_flush = self.redis_client.get(self.last_flush_key)
        if last_flush is None:
            return False
        return time.time() - float(last_flush) >= self.flush_interval

    def flush_if_due(self):
        size = self.queue_size()
        if not size:
            return 0
        if size >= self.batch_size or self.flush_due():
            return self.flush()
        return 0

    def flush(self):
        """Bulk insert up to one batch; returns how many events were flushed"""
        # Acquire processing lock to prevent concurrent flushes
        if not self.redis_client.set(self.processing_lock_key, '1', nx=True, ex=30):
            return 0

        events = []
        try:
            for _ in range(self.batch_size):
                event_data = self.redis_client.rpop(self.event_queue_key)
                if not event_data:
                    break
                events.append(json.loads(event_data))

            if events:
                event_ids = self.insert_events(events)
                self.dispatch_enrichment(event_ids)
                logger.info(f"Flushed batch of {len(events)} events")

            self.redis_client.set(self.last_flush_key, time.time())
            return len(events)

        except Exception:
            logger.exception(f"Batch flush failed, re-queueing {len(events)} events")
            # Back on the consuming end, oldest first
            for event in reversed(events):
                self.redis_client.rpush(self.event_queue_key, json.dumps(event, default=str))
            return 0
        finally:
            self.redis_client.delete(self.processing_lock_key)

    def drain(self):
        """Flush until the queue is empty, e.g. at worker shutdown"""
        total = 0
        try:
            while self.queue_size():
                flushed = self.flush()
                if not flushed:
                    break
                total += flushed
        except RedisError as e:
            logger.error(f"Could not drain event queue: {e}")
        if total:
            logger.info(f"Drained {total} queued events")
        return total

    def insert_events(self, events):
        """Unordered bulk insert; duplicate event ids are skipped, not fatal"""
        objects = [build_event(event_data, ingest_mode='queued') for event_data in events]
        return [obj.event_id for obj in insert_new_events(objects)]

    def dispatch_enrichment(self, event_ids):
        from .tasks import enrich_events

        try:
            enrich_events.delay(event_ids)
        except Exception:
            logger.exception(f"Could not schedule enrichment for {len(event_ids)} events")

    @transaction.atomic
    def process_single_event(self, event_data):
        event = build_event(event_data, ingest_mode='queued')
        Event.objects.bulk_create([event], ignore_conflicts=True)
        stored = Event.objects.filter(event_id=event.event_id).first()
        if stored is not None:
            apply_event_side_effects(stored)
        return stored
