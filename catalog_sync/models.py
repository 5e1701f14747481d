from django.db import models


class Supplier(models.Model):
    SYNC_NEVER = 'never'
    SYNC_RUNNING = 'running'
    SYNC_COMPLETED = 'completed'
    SYNC_FAILED = 'failed'
    SYNC_STOPPED = 'stopped'
    SYNC_STATUS_CHOICES = [
        (SYNC_NEVER, 'Never synced'),
        (SYNC_RUNNING, 'Running'),
        (SYNC_COMPLETED, 'Completed'),
        (SYNC_FAILED, 'Failed'),
        (SYNC_STOPPED, 'Stopped'),
    ]

    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=200, blank=True)
    feed_url = models.URLField(max_length=500, blank=True)
    auto_import = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    last_sync_hash = models.CharField(max_length=64, blank=True)
    last_sync_status = models.CharField(max_length=20, choices=SYNC_STATUS_CHOICES, default=SYNC_NEVER)
    last_sync_at = models.DateTimeField(null=True, blank=True)
    last_sync_message = models.TextField(blank=True)

    def __str__(self):
        return self.code


class ProductFamily(models.Model):
    supplier = models.ForeignKey(Supplier, on_delete=models.CASCADE, related_name='families')
    family_key = models.CharField(max_length=100)
    document_id = models.CharField(max_length=150, unique=True)
    name = models.JSONField(default=dict)
    description = models.JSONField(default=dict, blank=True)
    short_description = models.JSONField(default=dict, blank=True)
    material = models.JSONField(default=dict, blank=True)
    brand = models.CharField(max_length=200, blank=True)
    category = models.CharField(max_length=200, blank=True)
    country_of_origin = models.CharField(max_length=100, blank=True)
    delivery_time = models.CharField(max_length=100, blank=True)
    price_tiers = models.JSONField(default=list, blank=True)
    dimensions = models.JSONField(default=dict, blank=True)
    variant_count = models.PositiveIntegerField(default=0)
    available_colors = models.JSONField(default=list, blank=True)
    available_sizes = models.JSONField(default=list, blank=True)
    content_hash = models.CharField(max_length=64, blank=True)
    is_active = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['supplier', 'family_key'], name='unique_family_per_supplier'),
        ]

    def __str__(self):
        return f"{self.document_id} (hash={self.content_hash[:8]}...)"


class ProductVariant(models.Model):
    family = models.ForeignKey(ProductFamily, on_delete=models.CASCADE, related_name='variants')
    sku = models.CharField(max_length=100, unique=True)
    name = models.CharField(max_length=300, blank=True)
    color = models.CharField(max_length=100, blank=True)
    hex_color = models.CharField(max_length=20, blank=True)
    color_code = models.CharField(max_length=50, blank=True)
    size = models.CharField(max_length=50, blank=True)
    material = models.CharField(max_length=200, blank=True)
    dimensions = models.JSONField(default=dict, blank=True)
    image_urls = models.JSONField(default=dict, blank=True)
    is_primary_for_color = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.sku


class ImageAsset(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_READY = 'ready'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_READY, 'Ready'),
        (STATUS_FAILED, 'Failed'),
    ]

    dedup_key = models.CharField(max_length=80, unique=True)
    source_url = models.URLField(max_length=1000)
    content_hash = models.CharField(max_length=64, blank=True)
    storage_key = models.CharField(max_length=300, blank=True)
    url = models.URLField(max_length=1000, blank=True)
    size = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    claimed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.dedup_key[:12]} ({self.status})"


class ImageLink(models.Model):
    ENTITY_PRODUCT = 'product'
    ENTITY_VARIANT = 'product-variant'
    ENTITY_CHOICES = [
        (ENTITY_PRODUCT, 'Product'),
        (ENTITY_VARIANT, 'Product variant'),
    ]

    asset = models.ForeignKey(ImageAsset, on_delete=models.CASCADE, related_name='links')
    entity_type = models.CharField(max_length=20, choices=ENTITY_CHOICES)
    entity_id = models.PositiveIntegerField()
    field_name = models.CharField(max_length=30)
    index = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['entity_type', 'entity_id', 'field_name', 'index'],
                name='unique_image_slot',
            ),
        ]

    def __str__(self):
        return f"{self.entity_type}:{self.entity_id}.{self.field_name}[{self.index}]"


class SyncJob(models.Model):
    STATE_WAITING = 'waiting'
    STATE_ACTIVE = 'active'
    STATE_COMPLETED = 'completed'
    STATE_FAILED = 'failed'
    STATE_DELAYED = 'delayed'
    STATE_AWAITING_DEPENDENTS = 'awaiting-dependents'
    STATE_CHOICES = [
        (STATE_WAITING, 'Waiting'),
        (STATE_ACTIVE, 'Active'),
        (STATE_COMPLETED, 'Completed'),
        (STATE_FAILED, 'Failed'),
        (STATE_DELAYED, 'Delayed'),
        (STATE_AWAITING_DEPENDENTS, 'Awaiting dependents'),
    ]
    TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED)
    RUNNABLE_STATES = (STATE_WAITING, STATE_DELAYED)

    queue = models.CharField(max_length=40)
    job_id = models.CharField(max_length=200)
    payload = models.JSONField(default=dict)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_WAITING)
    attempts_made = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=1)
    backoff_type = models.CharField(max_length=20, default='exponential')
    backoff_delay = models.FloatField(default=0)
    available_at = models.DateTimeField()
    progress = models.JSONField(default=dict, blank=True)
    result = models.JSONField(null=True, blank=True)
    error = models.TextField(blank=True)
    parent = models.ForeignKey('self', null=True, blank=True, on_delete=models.SET_NULL, related_name='children')
    session_id = models.CharField(max_length=100, blank=True)
    supplier_code = models.CharField(max_length=20, blank=True)
    heartbeat_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['queue', 'job_id'], name='unique_job_per_queue'),
        ]
        indexes = [
            models.Index(fields=['queue', 'state', 'available_at'], name='syncjob_queue_state_idx'),
            models.Index(fields=['session_id'], name='syncjob_session_idx'),
        ]

    def __str__(self):
        return f"{self.queue}/{self.job_id} ({self.state})"


class QueueState(models.Model):
    queue = models.CharField(max_length=40, unique=True)
    is_paused = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.queue} ({'paused' if self.is_paused else 'running'})"


class SyncSession(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_RUNNING = 'running'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_STOPPED = 'stopped'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_RUNNING, 'Running'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_STOPPED, 'Stopped'),
    ]
    FINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_STOPPED)

    STAGE_PENDING = 'pending'
    STAGE_RUNNING = 'running'
    STAGE_COMPLETED = 'completed'
    STAGE_FAILED = 'failed'
    STAGE_SKIPPED = 'skipped'
    STAGE_STATUS_CHOICES = [
        (STAGE_PENDING, 'Pending'),
        (STAGE_RUNNING, 'Running'),
        (STAGE_COMPLETED, 'Completed'),
        (STAGE_FAILED, 'Failed'),
        (STAGE_SKIPPED, 'Skipped'),
    ]
    SETTLED_STAGE_STATUSES = (STAGE_COMPLETED, STAGE_FAILED, STAGE_SKIPPED)

    session_id = models.CharField(max_length=100, unique=True)
    supplier = models.ForeignKey(Supplier, null=True, blank=True, on_delete=models.SET_NULL, related_name='sessions')
    supplier_code = models.CharField(max_length=20)
    triggered_by = models.CharField(max_length=20, default='manual')
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_PENDING)
    stop_requested = models.BooleanField(default=False)
    started_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    promidata_status = models.CharField(max_length=10, choices=STAGE_STATUS_CHOICES, default=STAGE_PENDING)
    promidata_listed = models.BooleanField(default=False)
    promidata_started_at = models.DateTimeField(null=True, blank=True)
    promidata_completed_at = models.DateTimeField(null=True, blank=True)
    promidata_products_found = models.PositiveIntegerField(default=0)
    promidata_families_total = models.PositiveIntegerField(default=0)
    promidata_families_processed = models.PositiveIntegerField(default=0)
    promidata_families_skipped = models.PositiveIntegerField(default=0)
    promidata_families_removed = models.PositiveIntegerField(default=0)
    promidata_families_invalid = models.PositiveIntegerField(default=0)
    promidata_families_failed = models.PositiveIntegerField(default=0)

    images_status = models.CharField(max_length=10, choices=STAGE_STATUS_CHOICES, default=STAGE_PENDING)
    images_started_at = models.DateTimeField(null=True, blank=True)
    images_completed_at = models.DateTimeField(null=True, blank=True)
    images_total = models.PositiveIntegerField(default=0)
    images_uploaded = models.PositiveIntegerField(default=0)
    images_deduplicated = models.PositiveIntegerField(default=0)
    images_failed = models.PositiveIntegerField(default=0)

    search_status = models.CharField(max_length=10, choices=STAGE_STATUS_CHOICES, default=STAGE_PENDING)
    search_started_at = models.DateTimeField(null=True, blank=True)
    search_completed_at = models.DateTimeField(null=True, blank=True)
    search_total = models.PositiveIntegerField(default=0)
    search_indexed = models.PositiveIntegerField(default=0)
    search_failed = models.PositiveIntegerField(default=0)

    semantic_status = models.CharField(max_length=10, choices=STAGE_STATUS_CHOICES, default=STAGE_PENDING)
    semantic_started_at = models.DateTimeField(null=True, blank=True)
    semantic_completed_at = models.DateTimeField(null=True, blank=True)
    semantic_total = models.PositiveIntegerField(default=0)
    semantic_synced = models.PositiveIntegerField(default=0)
    semantic_skipped = models.PositiveIntegerField(default=0)
    semantic_failed = models.PositiveIntegerField(default=0)

    errors = models.JSONField(default=list, blank=True)
    error_count = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['supplier_code', 'status'], name='session_supplier_status_idx'),
        ]

    def __str__(self):
        return f"{self.session_id} ({self.status})"


class SemanticDocument(models.Model):
    family = models.OneToOneField(ProductFamily, on_delete=models.CASCADE, related_name='semantic_document')
    store_name = models.CharField(max_length=200)
    document_name = models.CharField(max_length=300, blank=True)
    synced_hash = models.CharField(max_length=64)
    product_hash = models.CharField(max_length=64, blank=True)
    synced_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.family_id} -> {self.document_name or self.store_name}"
