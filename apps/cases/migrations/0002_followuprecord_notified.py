from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('cases', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='followuprecord',
            name='notified',
            field=models.BooleanField(db_index=True, default=False, help_text='Reminder already claimed for delivery'),
        ),
    ]
