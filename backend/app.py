from flask import Flask, request, jsonify
from flask_cors import CORS
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from scripting_workflow import ACTIONS_RETURNING_TASK, build_default_service, default_data_dir
from workflow_errors import (
    PersistenceError,
    PreconditionError,
    TaskAlreadyActive,
    ValidationError,
    error_payload,
)

# Loads environment variables from .env
load_dotenv()


def _error_response(e: Exception):
    """
    Maps workflow errors to HTTP status codes with one JSON error shape.
    """
    if isinstance(e, TaskAlreadyActive):
        status = 409
    elif isinstance(e, PreconditionError):
        status = 400
    elif isinstance(e, ValidationError):
        status = 422
    elif isinstance(e, PersistenceError):
        status = 503
    elif isinstance(e, (FileNotFoundError, KeyError)):
        body = error_payload(e)
        body["error"] = f"Not found: {e.args[0] if e.args else ''}"
        body["error_code"] = "NOT_FOUND"
        return jsonify(body), 404
    elif isinstance(e, ValueError):
        status = 400
    else:
        print(f"❌ Unexpected error: {str(e)}")
        status = 500
    return jsonify(error_payload(e)), status


def create_app(service=None, settings_store=None) -> Flask:
    if service is None:
        service, settings_store = build_default_service()

    app = Flask(__name__)
    CORS(app)  # frontend runs on another port
    app.config["SCRIPTING_SERVICE"] = service

    @app.errorhandler(Exception)
    def _handle_error(e):
        if isinstance(e, HTTPException):
            return e
        return _error_response(e)

    @app.route('/api/health')
    def health_check():
        return jsonify({'status': 'ok'})

    @app.route('/api/settings')
    def get_settings():
        """
        LLM defaults + workflow knobs. API keys are only reported as configured or not.
        """
        if settings_store is None:
            return jsonify({'success': False, 'error': 'Settings store is not configured', 'error_code': 'NOT_FOUND'}), 404
        return jsonify({'success': True, 'settings': settings_store.public_view()})

    @app.route('/api/videos/<video_id>/blueprint', methods=['GET'])
    def get_blueprint(video_id):
        # reads never create; POST or an action does
        if not service.store.exists(video_id):
            raise FileNotFoundError(video_id)
        opened = service.open(video_id)
        active = service.orchestrator.active_task(video_id)
        return jsonify({
            'success': True,
            'status': opened['status'],
            'blueprint': opened['blueprint'],
            'active_task': active,
            'autosave': service.autosave_status(video_id),
        })

    @app.route('/api/videos/<video_id>/blueprint', methods=['POST'])
    def edit_blueprint(video_id):
        data = request.get_json(silent=True) or {}
        patch = data.get('patch') if isinstance(data.get('patch'), dict) else data
        service.open(video_id)
        doc = service.edit(video_id, patch)
        return jsonify({'success': True, 'blueprint': doc})

    @app.route('/api/videos/<video_id>/actions/<action>', methods=['POST'])
    def run_action(video_id, action):
        params = request.get_json(silent=True) or {}
        service.open(video_id)
        print(f"▶️  {video_id}: {action}")
        result = service.run_action(video_id, action, params)
        if action in ACTIONS_RETURNING_TASK:
            return jsonify({'success': True, 'task': result}), 202
        return jsonify({'success': True, 'blueprint': result})

    @app.route('/api/tasks/<task_id>', methods=['GET'])
    def get_task(task_id):
        return jsonify({'success': True, 'task': service.task_status(task_id)})

    @app.route('/api/tasks/<task_id>/retry', methods=['POST'])
    def retry_task(task_id):
        return jsonify({'success': True, 'task': service.retry(task_id)}), 202

    @app.route('/api/videos/<video_id>/tasks', methods=['GET'])
    def list_tasks(video_id):
        return jsonify({'success': True, 'tasks': service.tasks(video_id)})

    @app.route('/api/videos/<video_id>/footage', methods=['GET'])
    def get_footage(video_id):
        return jsonify({'success': True, 'footage_inventory': service.footage_inventory(video_id)})

    @app.route('/api/videos/<video_id>/footage', methods=['PUT'])
    def put_footage(video_id):
        data = request.get_json(silent=True) or {}
        inventory = data.get('footage_inventory') if 'footage_inventory' in data else data
        clean = service.store.write_footage_inventory(video_id, inventory)
        return jsonify({'success': True, 'footage_inventory': clean})

    return app


if __name__ == '__main__':
    print("🎬 Scripting Workflow Backend")
    print("📂 Data folder:", default_data_dir())
    print("🌐 Server: http://localhost:5000")
    # No reloader: the autosave threads must not be started twice
    create_app().run(debug=False, host='0.0.0.0', port=5000, use_reloader=False)
