from linkbox import create_app

app = create_app()

# gunicorn -w 4 wsgi:app
# Set IS_SCHEDULER=1 on exactly one process (or run linkbox.scripts.run_outbox_worker) to drain the outbox
