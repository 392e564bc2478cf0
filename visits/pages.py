import logging

from django.db import transaction
from django.utils import timezone

from .models import Page, PageVisitor

logger = logging.getLogger(__name__)


@transaction.atomic
def record_page_view(url, title, user_id, referrer=None, now=None):
    """Count one view of ``url`` and tally where it came from"""
    if not url:
        return None
    now = now or timezone.now()

    page, created = Page.objects.select_for_update().get_or_create(
        page_url=url,
        defaults={'title': title or 'Unknown Page', 'last_viewed_at': now},
    )
    page.total_views += 1
    page.last_viewed_at = now
    if title and page.title in ('', 'Unknown Page'):
        page.title = title

    if referrer and referrer.get('source'):
        _tally_referrer(page, referrer, now)

    _, first_time = PageVisitor.objects.get_or_create(
        page=page, user_id=user_id, defaults={'first_visit': now}
    )
    if first_time:
        page.unique_users += 1

    page.avg_duration = page.total_time_spent / page.total_views
    page.save()
    return page


@transaction.atomic
def record_page_time(url, seconds):
    """Add a finalized stay duration to the page totals"""
    try:
        page = Page.objects.select_for_update().get(page_url=url)
    except Page.DoesNotExist:
        logger.warning(f"Page time for unknown page {url!r} dropped")
        return None

    page.total_time_spent += seconds
    page.avg_duration = page.total_time_spent / page.total_views if page.total_views else 0.0
    page.save(update_fields=['total_time_spent', 'avg_duration'])
    return page


def _tally_referrer(page, referrer, now):
    stamp = now.isoformat()
    for entry in page.referrer_sources:
        if entry['source'] == referrer['source']:
            entry['visits'] += 1
            entry['last_visit'] = stamp
            return
    page.referrer_sources.append({
        'source': referrer['source'],
        'medium': referrer.get('medium', 'none'),
        'campaign': referrer.get('campaign', 'direct'),
        'visits': 1,
        'first_visit': stamp,
        'last_visit': stamp,
    })
