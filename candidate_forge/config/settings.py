# Configuration for the candidate forge pipeline
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value not in (None, "") else default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value not in (None, "") else default


# Only needed when the Ollama instance sits behind an authenticating proxy
API_KEY = os.getenv("API_KEY")

# Ollama host, usually http://localhost:11434
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")

# LLM Model Configuration
OLLAMA_MODEL_NAME = os.getenv("OLLAMA_MODEL_NAME", "granite3.3")
SYNTHESIS_MODEL_NAME = os.getenv("SYNTHESIS_MODEL_NAME", OLLAMA_MODEL_NAME)
INTERPRETER_MODEL_NAME = os.getenv("INTERPRETER_MODEL_NAME", OLLAMA_MODEL_NAME)
LLM_REQUEST_TIMEOUT_SECONDS = _env_float("LLM_REQUEST_TIMEOUT_SECONDS", 120.0)

# API Retry Parameters
API_MAX_RETRIES = _env_int("API_MAX_RETRIES", 5)
API_RETRY_DELAY_SECONDS = _env_float("API_RETRY_DELAY_SECONDS", 10.0)  # Initial delay, doubled per attempt

# Evolutionary Parameters
EVOLUTION_STRATEGY = "genetic"
POPULATION_SIZE = 50
MAX_GENERATIONS = 100
FITNESS_THRESHOLD = 0.95
MUTATION_RATE = 0.1
CROSSOVER_RATE = 0.8
SELECTION_PRESSURE = 2.0
ELITISM_FRACTION = 0.1
DIVERSITY_MAINTENANCE = True
CONVERGENCE_THRESHOLD = 0.01
CONVERGENCE_WINDOW = 5  # Trailing generations inspected for a fitness plateau

# Diversity maintenance bounds
DIVERSITY_SIMILARITY_THRESHOLD = 0.95
DIVERSITY_SAMPLE_SIZE = 10
DIVERSITY_MAX_RESEEDS = 3

# Simulated annealing
ANNEALING_INITIAL_TEMPERATURE = 1.0
ANNEALING_MIN_TEMPERATURE = 0.01

# Quality evaluation
QUALITY_THRESHOLD = 80.0  # On the 0-100 scale of evaluation vectors
STRATEGY_COUNT = 5
GENERATION_STRATEGIES = ["template", "pattern_based", "example_driven", "hybrid", "ai_assisted"]
DOMAIN_MARKERS = ["class ", "def ", '"""']

# Workflow step policy
STEP_MAX_RETRIES = 2
STEP_RETRY_DELAY_SECONDS = 1.0
STEP_TIMEOUT_SECONDS = 300.0
STRATEGY_GENERATION_MAX_RETRIES = 3
STRATEGY_GENERATION_TIMEOUT_SECONDS = 300.0
EVALUATION_TIMEOUT_SECONDS = 180.0

# Evolution used inside the generation workflow (smaller than a standalone run)
WORKFLOW_EVOLUTION_POPULATION_SIZE = 10
WORKFLOW_EVOLUTION_MAX_GENERATIONS = 10
WORKFLOW_MAX_EVOLUTION_ROUNDS = 3  # Optimizer runs before a below-threshold result is accepted as degraded

# Continuous evolution
EVOLUTION_INTERVALS_SECONDS = {
    "continuous": 60 * 60,
    "experimental": 60 * 60,
    "conservative": 24 * 60 * 60,
    "aggressive": 15 * 60,
}
DEFAULT_AUTONOMY_LEVEL = "full_auto"
CONTINUOUS_EVOLUTION_POPULATION_SIZE = 25
CONTINUOUS_EVOLUTION_MAX_GENERATIONS = 10

# Database settings
DATABASE_TYPE = os.getenv("DATABASE_TYPE", "in_memory")  # or "json_file"
DATABASE_PATH = os.getenv("DATABASE_PATH", "candidate_forge_db.json")

# Logging Parameters
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_FILE = os.getenv("LOG_FILE", "candidate_forge.log")


# --- Helper function to get a specific setting ---
def get_setting(key, default=None):
    """
    Retrieves a setting value.
    Environment variables win over module constants so deployments can tune
    a run without editing this file.
    """
    value = globals().get(key, default)
    env_value = os.getenv(key)
    if env_value is None or isinstance(value, (list, dict)):
        return value
    if isinstance(value, bool):
        return env_value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(value, (int, float)):
        return type(value)(env_value)
    return env_value


def get_llm_model(model_type="synthesis"):
    if model_type == "synthesis":
        return SYNTHESIS_MODEL_NAME
    elif model_type == "interpreter":
        return INTERPRETER_MODEL_NAME
    return OLLAMA_MODEL_NAME  # Default fallback
