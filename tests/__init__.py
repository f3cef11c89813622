"""Test package for krishi-chat."""
# pick up MONGODB_CONNECTION and friends from a .env file if there is one
from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv(usecwd=True))
