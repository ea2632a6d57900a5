from pydantic import BaseModel

class DecodedAccessToken(BaseModel):
    """
    Decoded access token data
        Args:
        - sub (str): User ID
        - name (str): User name
        - email (str): User email
        - role (str): User role (student, tutor or admin)
        - logged_in (bool): User logged in status
        - exp (int): Token expiration time
    """
    sub: str
    name: str
    email: str
    role: str
    logged_in: bool = True
    exp: int

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
