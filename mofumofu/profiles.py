"""
Dog and user profiles.

Images arrive base64-encoded in the JSON body ("imageBase64", a data URI
prefix is fine) and are stored in blob storage; the document keeps the
public URL. A failed upload does not undo the save, the caller gets a
warning instead.
"""
import base64
import binascii
import logging
import re

from mofumofu.errors import Forbidden, MissingPrecondition, NotFound, UploadFailed
from mofumofu.helpers import parse_number, utcnow
from mofumofu.models import DogProfile, UserAccount

logger = logging.getLogger(__name__)

BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+\Z")
DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,")
SEXES = ("male", "female")
UPLOAD_WARNING = "Saved, but the image could not be uploaded."


def decode_image(value):
    """
    Returns (bytes_or_None, content_type, error_message).
    """
    if not isinstance(value, str) or not value.strip():
        return None, None, None
    b64_str = value.strip()
    content_type = "image/jpeg"
    m = DATA_URI_PATTERN.match(b64_str)
    if m:
        content_type = m.group("mime")
        b64_str = b64_str[m.end():]
    if not BASE64_PATTERN.match(b64_str):
        return None, None, "Invalid base64 image data."
    try:
        data = base64.b64decode(b64_str, validate=True)
    except (binascii.Error, ValueError):
        return None, None, "Invalid base64 image data."
    return data, content_type, None


def normalize_dog_payload(data: dict, partial: bool = False):
    """
    Accepts keys: name, sex, age, likes, notes
    Returns (dog_dict, error_message)
    """
    dog = {}

    if not partial:
        if not (data.get("name") or "").strip():
            return None, "Missing fields: name"

    for key in ["name", "likes", "notes"]:
        if key in data and isinstance(data[key], str):
            dog[key] = data[key].strip()

    if partial and "name" in dog and not dog["name"]:
        return None, "Field 'name' must not be empty."

    if "sex" in data:
        sex = str(data["sex"] or "").strip().lower()
        if sex not in SEXES:
            return None, "Field 'sex' must be 'male' or 'female'."
        dog["sex"] = sex
    elif not partial:
        dog["sex"] = "male"

    if "age" in data:
        age = parse_number(data["age"])
        if data["age"] not in (None, "") and age is None:
            return None, "Field 'age' must be a number."
        if age is not None and age < 0:
            return None, "Field 'age' must not be negative."
        dog["age"] = age

    return dog, None


class ProfileService:
    def __init__(self, identity, store, blobs, clock=utcnow):
        self.identity = identity
        self.store = store
        self.blobs = blobs
        self.clock = clock

    def _upload(self, path, image, content_type):
        try:
            return self.blobs.upload(path, image, content_type), None
        except UploadFailed as e:
            logger.error("Upload to %s failed: %s", path, e)
            return None, UPLOAD_WARNING

    # ---------------------- users ---------------------------
    def me(self):
        doc = self.store.get("users", self.identity.user_id)
        if not doc:
            raise NotFound("User not found.")
        return UserAccount.from_doc(doc)

    def update_user(self, data):
        """Returns (UserAccount, warning_or_None)."""
        fields = {}
        if "name" in data and isinstance(data["name"], str):
            name = data["name"].strip()
            if not name:
                raise MissingPrecondition("Field 'name' must not be empty.")
            fields["name"] = name
        if "comment" in data and isinstance(data["comment"], str):
            fields["comment"] = data["comment"].strip()

        image, content_type, err = decode_image(data.get("imageBase64"))
        if err:
            raise MissingPrecondition(err)

        if fields and not self.store.update("users", self.identity.user_id, fields):
            raise NotFound("User not found.")

        warning = None
        if image is not None:
            url, warning = self._upload(
                f"users/{self.identity.user_id}/profile/profileImage", image, content_type,
            )
            if url:
                self.store.update("users", self.identity.user_id, {"profileImage": url})
        return self.me(), warning

    # ---------------------- dogs ----------------------------
    def my_dogs(self):
        docs = self.store.find("dogs", {"ownerId": self.identity.user_id}, order_by="createdAt")
        return [DogProfile.from_doc(d) for d in docs]

    def get_dog(self, dog_id):
        doc = self.store.get("dogs", dog_id)
        if not doc:
            raise NotFound("Dog not found.")
        return DogProfile.from_doc(doc)

    def register_dog(self, data):
        """Returns (DogProfile, warning_or_None)."""
        dog, err = normalize_dog_payload(data, partial=False)
        if err:
            raise MissingPrecondition(err)
        image, content_type, err = decode_image(data.get("imageBase64"))
        if err:
            raise MissingPrecondition(err)

        now = self.clock()
        doc = {
            "name": dog["name"],
            "ownerId": self.identity.user_id,
            "sex": dog.get("sex", "male"),
            "age": dog.get("age"),
            "likes": dog.get("likes", ""),
            "notes": dog.get("notes", ""),
            "profileImage": None,
            "isWalking": False,
            "lastWalkingStatusUpdate": None,
            "latitude": None,
            "longitude": None,
            "createdAt": now,
            "updatedAt": now,
        }
        dog_id = self.store.insert("dogs", doc)
        self.store.update("users", self.identity.user_id, {"isOwner": True})
        logger.info("Dog %s registered by %s", dog_id, self.identity.user_id)

        warning = None
        if image is not None:
            url, warning = self._upload(f"dogs/{dog_id}/profile/dogImage", image, content_type)
            if url:
                self.store.update("dogs", dog_id, {"profileImage": url})
        return self.get_dog(dog_id), warning

    def update_dog(self, dog_id, data):
        current = self.get_dog(dog_id)
        if current.owner_id != self.identity.user_id:
            raise Forbidden("Only the owner can edit this dog.")

        fields, err = normalize_dog_payload(data, partial=True)
        if err:
            raise MissingPrecondition(err)
        image, content_type, err = decode_image(data.get("imageBase64"))
        if err:
            raise MissingPrecondition(err)

        if fields:
            fields["updatedAt"] = self.clock()
            if not self.store.update("dogs", dog_id, fields):
                raise NotFound("Dog not found.")

        warning = None
        if image is not None:
            url, warning = self._upload(f"dogs/{dog_id}/profile/dogImage", image, content_type)
            if url:
                self.store.update("dogs", dog_id, {"profileImage": url})
        return self.get_dog(dog_id), warning
