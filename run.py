"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py --debug run

CLI maintenance commands:

    flask --app run.py db upgrade
    flask --app run.py seed-defaults
    flask --app run.py reset-monthly-bonus
    flask --app run.py recalculate-trip-costs --rate-id 3
    flask --app run.py expire-projects
"""

from expenseflow import create_app

# WSGI application object; `flask run` and WSGI servers pick up this `app` variable.
app = create_app()

if __name__ == "__main__":
    # Direct `python run.py` usage is for development only.
    app.run(debug=True)
