import logging

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from . import transformer
from .change_detector import classify_families
from .errors import FatalSyncError, ValidationSyncError
from .extraction import extract_multilingual
from .feed_client import manifest_digest
from .image_pipeline import ImageTarget
from .job_runner import JobContext
from .models import ImageLink, ProductFamily, ProductVariant, Supplier, SyncJob
from .queue_config import GEMINI_SYNC, IMAGE_UPLOAD, MEILISEARCH_SYNC, PRODUCT_FAMILY, SUPPLIER_SYNC
from .semantic_store import SKIPPED

logger = logging.getLogger(__name__)

ACTION_UPSERT = 'upsert'
ACTION_DELETE = 'delete'


class SyncWorkers:
    """Stage handlers of the five queues plus the hooks chaining them."""

    def __init__(self, queue_service, tracker, feed_client, image_pipeline, search_index,
                 semantic_sync=None, locales=None):
        self.queue_service = queue_service
        self.tracker = tracker
        self.feed_client = feed_client
        self.image_pipeline = image_pipeline
        self.search_index = search_index
        self.semantic_sync = semantic_sync
        self.locales = locales

    @property
    def semantic_enabled(self) -> bool:
        return self.semantic_sync is not None

    def handlers(self) -> dict:
        return {
            SUPPLIER_SYNC: self.supplier_sync,
            PRODUCT_FAMILY: self.product_family,
            IMAGE_UPLOAD: self.image_upload,
            MEILISEARCH_SYNC: self.meilisearch_sync,
            GEMINI_SYNC: self.gemini_sync,
        }

    def register_hooks(self) -> None:
        self.queue_service.on_resolved(PRODUCT_FAMILY, self.on_family_resolved)
        self.queue_service.on_resolved(MEILISEARCH_SYNC, self.on_search_resolved)
        self.queue_service.on_failed(SUPPLIER_SYNC, self.on_supplier_failed)

    # ------------------------------------------------------------------
    # supplier-sync
    # ------------------------------------------------------------------

    def supplier_sync(self, ctx: JobContext) -> dict:
        code = ctx.payload['supplier_code']
        supplier = Supplier.objects.filter(code=code).first()
        if supplier is None:
            raise ValidationSyncError(f"Unknown supplier {code}")
        self._refuse_concurrent_sync(ctx.job, code)

        session = self.tracker.start_session(
            supplier, session_id=ctx.session_id or None, triggered_by=ctx.payload.get('triggered_by', 'manual'),
        )
        if not ctx.session_id:
            SyncJob.objects.filter(pk=ctx.job.pk).update(session_id=session.session_id)
            ctx.job.session_id = session.session_id

        Supplier.objects.filter(pk=supplier.pk).update(
            last_sync_status=Supplier.SYNC_RUNNING, last_sync_at=timezone.now(), last_sync_message='',
        )
        ctx.progress('fetching manifest', 5)
        entries = self.feed_client.fetch_supplier_entries(code, supplier.feed_url)

        ctx.progress('fetching products', 15)
        fetched = self.feed_client.fetch_products(entries)
        groups, skipped_variants = transformer.group_by_family(fetched.variants)

        ctx.progress('detecting changes', 60)
        stored = dict(
            ProductFamily.objects.filter(supplier=supplier, is_active=True)
            .values_list('family_key', 'content_hash')
        )
        report = classify_families(groups, stored, feed_complete=fetched.complete)

        valid, invalid = [], []
        for change in report.to_process:
            if self._has_name(change.variants):
                valid.append(change)
            else:
                logger.warning("Family %s/%s has no name on any variant – skipped.", code, change.family_key)
                invalid.append(change)

        for change in report.removed:
            self._remove_family(supplier, change.family_key)

        self.tracker.record_listing(
            session.session_id,
            products_found=len(entries),
            families_total=len(valid) + len(invalid) + len(report.unchanged),
            families_skipped=len(report.unchanged),
            families_invalid=len(invalid),
            families_removed=len(report.removed),
        )

        ctx.progress('enqueueing families', 80)
        enqueued = 0
        for change in valid:
            if ctx.stop_requested():
                logger.info("Stop requested – supplier sync %s halted after %d families.", code, enqueued)
                self.tracker.mark_stopped(session.session_id)
                self._finish_supplier(supplier, Supplier.SYNC_STOPPED, entries, 'Stopped by request.')
                return {'status': 'stopped', 'families_enqueued': enqueued}
            ctx.enqueue_child(
                PRODUCT_FAMILY,
                {
                    'supplier_code': code,
                    'family_key': change.family_key,
                    'content_hash': change.content_hash,
                    'variants': change.variants,
                },
                job_id=f"{session.session_id}:{change.family_key}",
            )
            enqueued += 1

        summary = (
            f"{len(entries)} products, {enqueued} families queued, {len(report.unchanged)} unchanged, "
            f"{len(report.removed)} removed, {len(invalid)} invalid"
        )
        if fetched.failed_urls:
            summary += f", {len(fetched.failed_urls)} downloads failed"
        self._finish_supplier(supplier, Supplier.SYNC_COMPLETED, entries, summary)
        ctx.progress('done', 100)
        logger.info("Supplier sync %s: %s (%.1f%% unchanged).", code, summary, report.efficiency)
        return {
            'status': 'completed',
            'session_id': session.session_id,
            'products_found': len(entries),
            'families_enqueued': enqueued,
            'families_unchanged': len(report.unchanged),
            'families_removed': len(report.removed),
            'families_invalid': len(invalid),
            'variants_skipped': skipped_variants,
            'failed_downloads': len(fetched.failed_urls),
            'efficiency': report.efficiency,
        }

    def _refuse_concurrent_sync(self, job: SyncJob, code: str) -> None:
        other = (
            SyncJob.objects.filter(queue=SUPPLIER_SYNC, supplier_code=code)
            .exclude(pk=job.pk)
            .filter(Q(state=SyncJob.STATE_ACTIVE) | Q(state__in=SyncJob.RUNNABLE_STATES, pk__lt=job.pk))
            .first()
        )
        if other is not None:
            raise FatalSyncError(f"Supplier {code} is already being synced by job {other.job_id}")

    def _has_name(self, raw_variants: list[dict]) -> bool:
        return any(extract_multilingual('name', raw, ['en']) for raw in raw_variants)

    def _remove_family(self, supplier: Supplier, family_key: str) -> None:
        family = ProductFamily.objects.filter(supplier=supplier, family_key=family_key).first()
        if family is None:
            return
        with transaction.atomic():
            ProductFamily.objects.filter(pk=family.pk).update(is_active=False, updated_at=timezone.now())
            family.variants.update(is_active=False)
        self.queue_service.enqueue(
            MEILISEARCH_SYNC,
            {'document_id': family.document_id, 'action': ACTION_DELETE},
            job_id=f"delete:{family.document_id}:{family.content_hash[:12]}",
            supplier_code=supplier.code,
        )
        logger.info("Family %s removed from feed – deactivated.", family.document_id)

    def _finish_supplier(self, supplier: Supplier, status: str, entries, message: str) -> None:
        Supplier.objects.filter(pk=supplier.pk).update(
            last_sync_status=status,
            last_sync_hash=manifest_digest(entries),
            last_sync_at=timezone.now(),
            last_sync_message=message,
        )

    def on_supplier_failed(self, job: SyncJob) -> None:
        Supplier.objects.filter(code=job.supplier_code).update(
            last_sync_status=Supplier.SYNC_FAILED,
            last_sync_at=timezone.now(),
            last_sync_message=job.error,
        )

    # ------------------------------------------------------------------
    # product-family
    # ------------------------------------------------------------------

    def product_family(self, ctx: JobContext) -> dict:
        payload = ctx.payload
        code, family_key = payload['supplier_code'], payload['family_key']
        if ctx.stop_requested():
            self._stop_family_session(ctx, code)
            return {'status': 'stopped'}

        record = transformer.transform_family(code, family_key, payload['variants'], self.locales)
        if record is None:
            raise ValidationSyncError(f"Family {code}/{family_key} has no name")
        transformer.check_primary_for_color(record.variants)

        supplier = Supplier.objects.get(code=code)
        family, variants, stopped = self._persist_family(ctx, supplier, record)
        if stopped:
            self._stop_family_session(ctx, code)
            return {'status': 'stopped', 'document_id': family.document_id}

        images = self._enqueue_images(ctx, family, record, variants)
        # hash written last: an interrupted family stays classified as changed
        ProductFamily.objects.filter(pk=family.pk).update(content_hash=record.content_hash)
        family.content_hash = record.content_hash
        counters = {'promidata_families_processed': 1, 'images_total': images, 'search_total': 1}
        if self.semantic_enabled:
            counters['semantic_total'] = 1
        self.tracker.increment(ctx.session_id, **counters)
        ctx.progress('done', 100)
        return {
            'status': 'completed',
            'document_id': family.document_id,
            'variants': len(variants),
            'images': images,
        }

    def _stop_family_session(self, ctx: JobContext, code: str) -> None:
        logger.info("Stop requested – family job %s halted.", ctx.job.job_id)
        self.tracker.mark_stopped(ctx.session_id)
        Supplier.objects.filter(code=code).exclude(last_sync_status=Supplier.SYNC_STOPPED).update(
            last_sync_status=Supplier.SYNC_STOPPED, last_sync_at=timezone.now(), last_sync_message='Stopped by request.',
        )

    def _persist_family(self, ctx: JobContext, supplier: Supplier, record: transformer.FamilyRecord):
        now = timezone.now()
        with transaction.atomic():
            family = (
                ProductFamily.objects.select_for_update()
                .filter(supplier=supplier, family_key=record.family_key)
                .first()
            )
            if family is None:
                family = ProductFamily(supplier=supplier, family_key=record.family_key)
            unchanged = family.pk and family.is_active and family.content_hash == record.content_hash
            if not unchanged:
                family.document_id = record.document_id
                family.name = record.name
                family.description = record.description
                family.short_description = record.short_description
                family.material = record.material
                family.brand = record.brand
                family.category = record.category
                family.country_of_origin = record.country_of_origin
                family.delivery_time = record.delivery_time
                family.price_tiers = record.price_tiers
                family.dimensions = record.dimensions
                family.variant_count = len(record.variants)
                family.available_colors = record.available_colors
                family.available_sizes = record.available_sizes
                family.is_active = True
                family.last_synced_at = now
                family.save()
            else:
                logger.debug("Family %s unchanged – variants left as stored.", family.document_id)

        variants = []
        total = len(record.variants) or 1
        for index, variant in enumerate(record.variants):
            if ctx.stop_requested():
                return family, variants, True
            obj, _ = ProductVariant.objects.update_or_create(
                sku=variant.sku,
                defaults={
                    'family': family,
                    'name': variant.name,
                    'color': variant.color,
                    'hex_color': variant.hex_color,
                    'color_code': variant.color_code,
                    'size': variant.size,
                    'material': variant.material,
                    'dimensions': variant.dimensions,
                    'image_urls': variant.image_urls,
                    'is_primary_for_color': variant.is_primary_for_color,
                    'is_active': True,
                },
            )
            variants.append(obj)
            ctx.progress('variants', 10 + int(70 * (index + 1) / total))

        vanished = family.variants.exclude(sku__in=[v.sku for v in record.variants]).update(is_active=False)
        if vanished:
            logger.info("Deactivated %d vanished variants of %s.", vanished, family.document_id)
        return family, variants, False

    def _enqueue_images(self, ctx: JobContext, family: ProductFamily, record, variants) -> int:
        references = {}
        for position, (variant, obj) in enumerate(zip(record.variants, variants)):
            if variant.primary_image:
                targets = [ImageTarget(ImageLink.ENTITY_VARIANT, obj.pk, 'primary_image', 0)]
                if position == 0:
                    targets.append(ImageTarget(ImageLink.ENTITY_PRODUCT, family.pk, 'main_image', 0))
                references[(variant.sku, 'primary_image', 0)] = (variant.primary_image, targets)
            for index, url in enumerate(variant.gallery_images):
                targets = [ImageTarget(ImageLink.ENTITY_VARIANT, obj.pk, 'gallery_images', index)]
                references[(variant.sku, 'gallery_images', index)] = (url, targets)

        for (sku, field_name, index), (url, targets) in references.items():
            ctx.enqueue_child(
                IMAGE_UPLOAD,
                {'url': url, 'targets': [t.as_dict() for t in targets]},
                job_id=f"{ctx.session_id}:{sku}:{field_name}:{index}",
            )
        return len(references)

    def on_family_resolved(self, job: SyncJob) -> None:
        result = job.result or {}
        if result.get('status') != 'completed':
            return
        self.queue_service.enqueue(
            MEILISEARCH_SYNC,
            {'document_id': result['document_id'], 'action': ACTION_UPSERT},
            job_id=f"{job.session_id}:{result['document_id']}" if job.session_id else None,
            session_id=job.session_id,
            supplier_code=job.supplier_code,
        )

    # ------------------------------------------------------------------
    # image-upload
    # ------------------------------------------------------------------

    def image_upload(self, ctx: JobContext) -> dict:
        targets = [ImageTarget(**t) for t in ctx.payload['targets']]
        result = self.image_pipeline.process(ctx.payload['url'], targets, ctx.payload.get('content_hash'))
        self.tracker.increment(ctx.session_id, **{f'images_{result.status}': 1})
        return {'status': result.status, 'asset': result.asset.pk, 'links': result.links}

    # ------------------------------------------------------------------
    # meilisearch-sync
    # ------------------------------------------------------------------

    def meilisearch_sync(self, ctx: JobContext) -> dict:
        document_id = ctx.payload['document_id']
        family = ProductFamily.objects.filter(document_id=document_id).select_related('supplier').first()
        if ctx.payload.get('action') == ACTION_DELETE or family is None or not family.is_active:
            self.search_index.delete(document_id)
            action = ACTION_DELETE
        else:
            self.search_index.upsert_family(family)
            action = ACTION_UPSERT
        self.tracker.increment(ctx.session_id, search_indexed=1)
        return {'status': 'completed', 'document_id': document_id, 'action': action}

    def on_search_resolved(self, job: SyncJob) -> None:
        if not self.semantic_enabled:
            return
        result = job.result or {}
        self.queue_service.enqueue(
            GEMINI_SYNC,
            {'document_id': result.get('document_id', job.payload['document_id']),
             'action': result.get('action', ACTION_UPSERT)},
            job_id=f"{job.job_id}:semantic",
            session_id=job.session_id,
            supplier_code=job.supplier_code,
        )

    # ------------------------------------------------------------------
    # gemini-sync
    # ------------------------------------------------------------------

    def gemini_sync(self, ctx: JobContext) -> dict:
        if self.semantic_sync is None:
            raise FatalSyncError('Semantic sync is disabled.')
        document_id = ctx.payload['document_id']
        if ctx.payload.get('action') == ACTION_DELETE:
            result = self.semantic_sync.delete(document_id)
        else:
            result = self.semantic_sync.sync(document_id)

        if result.status == SKIPPED:
            self.tracker.increment(ctx.session_id, semantic_skipped=1)
        else:
            self.tracker.increment(ctx.session_id, semantic_synced=1)
        return {'status': result.status, 'document_id': document_id, 'document_name': result.document_name,
                'reason': result.reason}
