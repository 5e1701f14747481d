import django.db.models.deletion
from django.db import migrations, models


STAGE_STATUS_CHOICES = [
    ('pending', 'Pending'),
    ('running', 'Running'),
    ('completed', 'Completed'),
    ('failed', 'Failed'),
    ('skipped', 'Skipped'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Supplier',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=20, unique=True)),
                ('name', models.CharField(blank=True, max_length=200)),
                ('feed_url', models.URLField(blank=True, max_length=500)),
                ('auto_import', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('last_sync_hash', models.CharField(blank=True, max_length=64)),
                ('last_sync_status', models.CharField(choices=[('never', 'Never synced'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed'), ('stopped', 'Stopped')], default='never', max_length=20)),
                ('last_sync_at', models.DateTimeField(blank=True, null=True)),
                ('last_sync_message', models.TextField(blank=True)),
            ],
        ),
        migrations.CreateModel(
            name='ImageAsset',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('dedup_key', models.CharField(max_length=80, unique=True)),
                ('source_url', models.URLField(max_length=1000)),
                ('content_hash', models.CharField(blank=True, max_length=64)),
                ('storage_key', models.CharField(blank=True, max_length=300)),
                ('url', models.URLField(blank=True, max_length=1000)),
                ('size', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('ready', 'Ready'), ('failed', 'Failed')], default='pending', max_length=10)),
                ('claimed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name='QueueState',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('queue', models.CharField(max_length=40, unique=True)),
                ('is_paused', models.BooleanField(default=False)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='ProductFamily',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('family_key', models.CharField(max_length=100)),
                ('document_id', models.CharField(max_length=150, unique=True)),
                ('name', models.JSONField(default=dict)),
                ('description', models.JSONField(blank=True, default=dict)),
                ('short_description', models.JSONField(blank=True, default=dict)),
                ('material', models.JSONField(blank=True, default=dict)),
                ('brand', models.CharField(blank=True, max_length=200)),
                ('category', models.CharField(blank=True, max_length=200)),
                ('country_of_origin', models.CharField(blank=True, max_length=100)),
                ('delivery_time', models.CharField(blank=True, max_length=100)),
                ('price_tiers', models.JSONField(blank=True, default=list)),
                ('dimensions', models.JSONField(blank=True, default=dict)),
                ('variant_count', models.PositiveIntegerField(default=0)),
                ('available_colors', models.JSONField(blank=True, default=list)),
                ('available_sizes', models.JSONField(blank=True, default=list)),
                ('content_hash', models.CharField(blank=True, max_length=64)),
                ('is_active', models.BooleanField(default=True)),
                ('last_synced_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('supplier', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='families', to='catalog_sync.supplier')),
            ],
        ),
        migrations.AddConstraint(
            model_name='productfamily',
            constraint=models.UniqueConstraint(fields=('supplier', 'family_key'), name='unique_family_per_supplier'),
        ),
        migrations.CreateModel(
            name='ProductVariant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sku', models.CharField(max_length=100, unique=True)),
                ('name', models.CharField(blank=True, max_length=300)),
                ('color', models.CharField(blank=True, max_length=100)),
                ('hex_color', models.CharField(blank=True, max_length=20)),
                ('color_code', models.CharField(blank=True, max_length=50)),
                ('size', models.CharField(blank=True, max_length=50)),
                ('material', models.CharField(blank=True, max_length=200)),
                ('dimensions', models.JSONField(blank=True, default=dict)),
                ('image_urls', models.JSONField(blank=True, default=dict)),
                ('is_primary_for_color', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('family', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='variants', to='catalog_sync.productfamily')),
            ],
        ),
        migrations.CreateModel(
            name='ImageLink',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('entity_type', models.CharField(choices=[('product', 'Product'), ('product-variant', 'Product variant')], max_length=20)),
                ('entity_id', models.PositiveIntegerField()),
                ('field_name', models.CharField(max_length=30)),
                ('index', models.PositiveIntegerField(default=0)),
                ('asset', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='links', to='catalog_sync.imageasset')),
            ],
        ),
        migrations.AddConstraint(
            model_name='imagelink',
            constraint=models.UniqueConstraint(fields=('entity_type', 'entity_id', 'field_name', 'index'), name='unique_image_slot'),
        ),
        migrations.CreateModel(
            name='SyncJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('queue', models.CharField(max_length=40)),
                ('job_id', models.CharField(max_length=200)),
                ('payload', models.JSONField(default=dict)),
                ('state', models.CharField(choices=[('waiting', 'Waiting'), ('active', 'Active'), ('completed', 'Completed'), ('failed', 'Failed'), ('delayed', 'Delayed'), ('awaiting-dependents', 'Awaiting dependents')], default='waiting', max_length=20)),
                ('attempts_made', models.PositiveIntegerField(default=0)),
                ('max_attempts', models.PositiveIntegerField(default=1)),
                ('backoff_type', models.CharField(default='exponential', max_length=20)),
                ('backoff_delay', models.FloatField(default=0)),
                ('available_at', models.DateTimeField()),
                ('progress', models.JSONField(blank=True, default=dict)),
                ('result', models.JSONField(blank=True, null=True)),
                ('error', models.TextField(blank=True)),
                ('session_id', models.CharField(blank=True, max_length=100)),
                ('supplier_code', models.CharField(blank=True, max_length=20)),
                ('heartbeat_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('parent', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='children', to='catalog_sync.syncjob')),
            ],
        ),
        migrations.AddConstraint(
            model_name='syncjob',
            constraint=models.UniqueConstraint(fields=('queue', 'job_id'), name='unique_job_per_queue'),
        ),
        migrations.AddIndex(
            model_name='syncjob',
            index=models.Index(fields=['queue', 'state', 'available_at'], name='syncjob_queue_state_idx'),
        ),
        migrations.AddIndex(
            model_name='syncjob',
            index=models.Index(fields=['session_id'], name='syncjob_session_idx'),
        ),
        migrations.CreateModel(
            name='SyncSession',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('session_id', models.CharField(max_length=100, unique=True)),
                ('supplier_code', models.CharField(max_length=20)),
                ('triggered_by', models.CharField(default='manual', max_length=20)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('running', 'Running'), ('completed', 'Completed'), ('failed', 'Failed'), ('stopped', 'Stopped')], default='pending', max_length=10)),
                ('stop_requested', models.BooleanField(default=False)),
                ('started_at', models.DateTimeField(auto_now_add=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('promidata_status', models.CharField(choices=STAGE_STATUS_CHOICES, default='pending', max_length=10)),
                ('promidata_listed', models.BooleanField(default=False)),
                ('promidata_started_at', models.DateTimeField(blank=True, null=True)),
                ('promidata_completed_at', models.DateTimeField(blank=True, null=True)),
                ('promidata_products_found', models.PositiveIntegerField(default=0)),
                ('promidata_families_total', models.PositiveIntegerField(default=0)),
                ('promidata_families_processed', models.PositiveIntegerField(default=0)),
                ('promidata_families_skipped', models.PositiveIntegerField(default=0)),
                ('promidata_families_removed', models.PositiveIntegerField(default=0)),
                ('promidata_families_invalid', models.PositiveIntegerField(default=0)),
                ('promidata_families_failed', models.PositiveIntegerField(default=0)),
                ('images_status', models.CharField(choices=STAGE_STATUS_CHOICES, default='pending', max_length=10)),
                ('images_started_at', models.DateTimeField(blank=True, null=True)),
                ('images_completed_at', models.DateTimeField(blank=True, null=True)),
                ('images_total', models.PositiveIntegerField(default=0)),
                ('images_uploaded', models.PositiveIntegerField(default=0)),
                ('images_deduplicated', models.PositiveIntegerField(default=0)),
                ('images_failed', models.PositiveIntegerField(default=0)),
                ('search_status', models.CharField(choices=STAGE_STATUS_CHOICES, default='pending', max_length=10)),
                ('search_started_at', models.DateTimeField(blank=True, null=True)),
                ('search_completed_at', models.DateTimeField(blank=True, null=True)),
                ('search_total', models.PositiveIntegerField(default=0)),
                ('search_indexed', models.PositiveIntegerField(default=0)),
                ('search_failed', models.PositiveIntegerField(default=0)),
                ('semantic_status', models.CharField(choices=STAGE_STATUS_CHOICES, default='pending', max_length=10)),
                ('semantic_started_at', models.DateTimeField(blank=True, null=True)),
                ('semantic_completed_at', models.DateTimeField(blank=True, null=True)),
                ('semantic_total', models.PositiveIntegerField(default=0)),
                ('semantic_synced', models.PositiveIntegerField(default=0)),
                ('semantic_skipped', models.PositiveIntegerField(default=0)),
                ('semantic_failed', models.PositiveIntegerField(default=0)),
                ('errors', models.JSONField(blank=True, default=list)),
                ('error_count', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True)),
                ('supplier', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='sessions', to='catalog_sync.supplier')),
            ],
        ),
        migrations.AddIndex(
            model_name='syncsession',
            index=models.Index(fields=['supplier_code', 'status'], name='session_supplier_status_idx'),
        ),
        migrations.CreateModel(
            name='SemanticDocument',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('store_name', models.CharField(max_length=200)),
                ('document_name', models.CharField(blank=True, max_length=300)),
                ('synced_hash', models.CharField(max_length=64)),
                ('product_hash', models.CharField(blank=True, max_length=64)),
                ('synced_at', models.DateTimeField(auto_now=True)),
                ('family', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='semantic_document', to='catalog_sync.productfamily')),
            ],
        ),
    ]
