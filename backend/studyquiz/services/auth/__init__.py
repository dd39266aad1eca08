from studyquiz.services.auth.security import create_access_token, decode_token
from studyquiz.services.auth.service import CurrentUser, get_current_user
