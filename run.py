# run.py
from evfleet import create_app
from evfleet.db_models import db
from evfleet import migrate
from flask import jsonify

app = create_app()

@app.route('/')
def index():
    return jsonify({"service": "evfleet", "status": "ok"})

if __name__ == '__main__':
    app.run(debug=True, host="0.0.0.0")
