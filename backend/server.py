from flask import Flask, request, jsonify
from flask_cors import CORS
from datetime import datetime, timezone
import logging
import os
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv

from auth import (
    hash_password, check_password, credential_problem, generate_token, token_required,
)
from db import get_user_by_username, create_user, get_db
from sm2_card import QUALITY_LABELS, InvalidQualityError
from sm2_system import (
    SM2System, CardExistsError, CardNotFoundError, ConcurrentReviewError,
)

load_dotenv()

# Environment configuration
ENV = os.getenv("ENV", "production")
PORT = int(os.getenv("PORT", 10000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
system = SM2System()

# CORS configuration
frontend_origins = os.getenv("FRONTEND_ORIGIN", "").split(",")
if not frontend_origins or frontend_origins == ['']:
    frontend_origins = ["*"]

CORS(
    app,
    resources={r"/api/*": {"origins": frontend_origins}},
    supports_credentials=True,
    allow_headers=["Content-Type", "Authorization"],
    methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
)


def parse_time(value):
    """
    Parse an ISO 8601 date or timestamp from a request.
    Naive values are taken as UTC. Returns the current time when value is empty.
    """
    if not value:
        return datetime.now(timezone.utc)
    if isinstance(value, str) and value.endswith('Z'):
        # browsers send toISOString() values, fromisoformat only takes Z from 3.11
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def serialize(record):
    out = {}
    for key, value in record.items():
        out[key] = value.isoformat() if isinstance(value, datetime) else value
    return out


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({'error': e.description}), e.code

# ==================== Health Check ====================

@app.route('/', methods=['GET'])
def index():
    return jsonify({
        'message': 'Dutch Vocabulary Spaced-Repetition API',
        'version': '1.0.0',
        'status': 'running'
    })

@app.route('/health', methods=['GET'])
def health():
    return jsonify({'status': 'ok'})

# ==================== Auth APIs ====================

def read_credentials():
    """
    Username and password from a JSON body, or an error response.
    Usernames are case-insensitive and stored lower-cased.
    """
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    password = data.get('password')
    if not isinstance(username, str) or not isinstance(password, str) or not username.strip() or not password:
        return None, None, (jsonify({'error': 'Enter a username and a password to practise vocabulary'}), 400)
    return username.strip().lower(), password, None

@app.route('/api/auth/register', methods=['POST'])
def register():
    username, password, error = read_credentials()
    if error:
        return error

    problem = credential_problem(username, password)
    if problem:
        return jsonify({'error': problem}), 400

    if get_user_by_username(username):
        return jsonify({'error': f'The username {username} is already taken'}), 400

    uid = create_user(username, hash_password(password))
    logger.info("Registered learner %s", username)
    return jsonify({
        'token': generate_token(uid, username),
        'username': username,
        'message': 'Account created, add your first Dutch words to start reviewing'
    })

@app.route('/api/auth/login', methods=['POST'])
def login():
    username, password, error = read_credentials()
    if error:
        return error

    user = get_user_by_username(username)
    if not user or not check_password(password, user['password']):
        logger.info("Failed login for %s", username)
        return jsonify({'error': 'Unknown username or wrong password'}), 401

    return jsonify({
        'token': generate_token(str(user['_id']), username),
        'username': username,
        'message': 'Welcome back'
    })

# ==================== Stats API ====================

@app.route('/api/stats', methods=['GET'])
@token_required
def get_statistics():
    try:
        now = parse_time(request.args.get('at'))
    except ValueError:
        return jsonify({'error': 'Invalid date format'}), 400
    return jsonify(serialize(system.stats(request.user_id, now)))

@app.route('/api/quality-labels', methods=['GET'])
def get_quality_labels():
    labels = [{'quality': q, 'label': label} for q, label in sorted(QUALITY_LABELS.items())]
    return jsonify({'labels': labels})

# ==================== Vocabulary APIs ====================

@app.route('/api/vocabulary', methods=['GET'])
@token_required
def get_all_words():
    words = system.list_words(request.user_id)
    return jsonify({'words': [serialize(w) for w in words]})

@app.route('/api/vocabulary', methods=['POST'])
@token_required
def add_word_api():
    data = request.get_json(silent=True) or {}
    vocabulary_id = data.get('vocabulary_id')

    if vocabulary_id is None or vocabulary_id == '':
        return jsonify({'error': 'Missing required fields'}), 400

    try:
        word = system.add_word(request.user_id, str(vocabulary_id))
    except CardExistsError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({'message': 'Word added successfully', 'word': serialize(word)})

@app.route('/api/vocabulary/due', methods=['GET'])
@token_required
def get_due_words():
    at = request.args.get('at')
    try:
        now = parse_time(at)
    except ValueError:
        return jsonify({'error': 'Invalid date format'}), 400

    words = system.due_words(request.user_id, now)
    return jsonify({'at': now.isoformat(), 'count': len(words), 'words': [serialize(w) for w in words]})

@app.route('/api/vocabulary/<vocabulary_id>/review', methods=['POST'])
@token_required
def review_word_api(vocabulary_id):
    data = request.get_json(silent=True) or {}
    quality = data.get('quality')

    if quality is None:
        return jsonify({'error': 'Missing required fields'}), 400

    try:
        reviewed_at = parse_time(data.get('reviewed_at'))
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid date format'}), 400

    try:
        word = system.submit_review(request.user_id, vocabulary_id, quality, reviewed_at)
    except InvalidQualityError as e:
        logger.info("Rejected review of word %s: %s", vocabulary_id, e)
        return jsonify({'error': str(e)}), 400
    except CardNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ConcurrentReviewError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({'message': 'Review successful', 'word': serialize(word)})

@app.route('/api/vocabulary/<vocabulary_id>/mastered', methods=['POST'])
@token_required
def mark_mastered_api(vocabulary_id):
    try:
        system.mark_mastered(request.user_id, vocabulary_id)
    except CardNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    return jsonify({'message': 'Marked as mastered'})

@app.route('/api/vocabulary/<vocabulary_id>/archive', methods=['POST'])
@token_required
def archive_api(vocabulary_id):
    try:
        system.archive(request.user_id, vocabulary_id)
    except CardNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    return jsonify({'message': 'Word archived'})

@app.route('/api/vocabulary/<vocabulary_id>', methods=['DELETE'])
@token_required
def delete_word_api(vocabulary_id):
    try:
        system.remove_word(request.user_id, vocabulary_id)
    except CardNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    return jsonify({'message': 'Word deleted successfully'})

# ==================== Entry Point ====================

if __name__ == '__main__':
    print("=" * 50)
    print("Dutch Vocabulary Spaced-Repetition Backend")
    print("Environment:", ENV)
    print("Port:", PORT)
    print("=" * 50)
    get_db()
    app.run(host='0.0.0.0', port=PORT, debug=(ENV == 'development'))
