from flask import Blueprint, Response, current_app, jsonify
import logging

from .websocket import console_windows

logger = logging.getLogger(__name__)

bp = Blueprint('main', __name__)

@bp.route('/api/vms', methods=['GET'])
def list_vms():
    """List the VMs whose consoles can be opened."""
    return jsonify(current_app.console_backend.list_vms())

@bp.route('/api/vms/<vm_id>/serial', methods=['GET'])
def get_serial_console_info(vm_id: str):
    """Whether the VM exposes a serial console, and where."""
    info = current_app.console_backend.get_serial_console_info(vm_id)
    return jsonify(info.to_dict())

@bp.route('/api/consoles/<sid>/screenshot', methods=['GET'])
def get_console_screenshot(sid: str):
    """PNG of the graphical console of an open window."""
    window = console_windows.get(sid)
    if window is None:
        return jsonify({'success': False, 'error': 'Console not open'}), 404

    data = window.capture_screenshot()
    if data is None:
        return jsonify({'success': False, 'error': 'Console not connected'}), 409

    filename = window.screenshot_filename()
    logger.info(f"Serving screenshot {filename} for VM {window.vm_id}")
    return Response(data, mimetype='image/png',
                    headers={'Content-Disposition': f'attachment; filename="{filename}"'})
