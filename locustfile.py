import logging
import random
import string

from locust import HttpUser, TaskSet, between, task

BOOTH_IDS = [1, 2]


# Helper Functions
def generate_email() -> str:
    """랜덤한 이메일 생성"""
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=10)) + "@festival.test"


def polling_interval(position: int) -> float:
    """클라이언트와 같은 순번 기반 폴링 주기(초)"""
    if position <= 5:
        return 5
    if position <= 20:
        return 10
    if position <= 50:
        return 20
    return 30


def login(client, role: str, managed_booth_id=None) -> dict:
    body = {"email": generate_email(), "nickname": role.lower(), "role": role}
    if managed_booth_id is not None:
        body["managedBoothId"] = managed_booth_id
    res = client.post("/api/v1/auth/login", json=body)
    if res.status_code != 200:
        logging.error(f"로그인 실패: {res.text}")
        return {}
    return {"Authorization": f"Bearer {res.json()['accessToken']}"}


class VisitorTasks(TaskSet):
    check_count: int = 0
    max_checks: int = 10

    def on_start(self):
        """사용자 시작 시 로그인 후 웨이팅 등록"""
        self.headers = login(self.client, "VISITOR")
        self.booth_id = random.choice(BOOTH_IDS)
        self.cancel_check_range = random.randint(5, 7)
        self.position = None
        if not self.headers:
            self.interrupt()
        self.create_waiting()

    def wait_time(self):
        if self.position is None:
            return 1
        return polling_interval(self.position)

    @task(2)
    def get_booths(self):
        res = self.client.get("/api/v1/booths", headers=self.headers)
        if res.status_code != 200:
            logging.error(f"부스 목록 조회 실패: {res.text}")

    @task(10)
    def check_my_position(self):
        """내 순번 조회 및 취소 처리"""
        if self.check_count >= self.max_checks:
            self.user.stop(True)
            return

        res = self.client.get(
            f"/api/v1/waitings/booth/{self.booth_id}",
            headers=self.headers,
            name="/api/v1/waitings/booth/[boothId]",
        )
        self.check_count += 1
        if res.status_code == 404:
            logging.info(f"[{self.booth_id}] 웨이팅 종료됨")
            self.user.stop(True)
            return

        data = res.json()
        self.position = data.get("position")
        logging.info(
            f"[부스 {self.booth_id}] 횟수: {self.check_count} | 순번: {self.position} | 상태: {data.get('status')}"
        )

        if self.check_count == self.cancel_check_range and data.get("status") == "WAITING":
            self.cancel_waiting()

    @task(3)
    def check_my_waitings(self):
        self.client.get("/api/v1/waitings/my", headers=self.headers)

    def create_waiting(self):
        """웨이팅 생성"""
        res = self.client.post(
            "/api/v1/waitings", json={"boothId": self.booth_id}, headers=self.headers
        )
        if res.status_code == 200:
            self.position = res.json().get("position")
            logging.info(f"웨이팅 생성 성공: 부스 {self.booth_id}, 순번 {self.position}")
        else:
            logging.error(f"웨이팅 생성 실패: {res.text}")
            self.interrupt()

    def cancel_waiting(self):
        """웨이팅 취소 요청"""
        res = self.client.delete(
            f"/api/v1/waitings/{self.booth_id}",
            headers=self.headers,
            name="/api/v1/waitings/[boothId]",
        )
        if res.status_code == 204:
            logging.info(f"웨이팅 취소 성공: 부스 {self.booth_id}")
        else:
            logging.error(f"웨이팅 취소 실패: {res.text}")
        self.check_count = self.max_checks


class StaffTasks(TaskSet):
    def on_start(self):
        self.booth_id = random.choice(BOOTH_IDS)
        self.headers = login(self.client, "STAFF", self.booth_id)
        if not self.headers:
            self.interrupt()

    @task(5)
    def dashboard(self):
        self.client.get(
            f"/api/v1/booths/{self.booth_id}/status",
            headers=self.headers,
            name="/api/v1/booths/[boothId]/status",
        )

    @task(3)
    def call_next(self):
        with self.client.post(
            "/api/v1/waitings/call",
            json={"boothId": self.booth_id},
            headers=self.headers,
            catch_response=True,
        ) as res:
            # an empty or full booth is an expected answer, not a failure
            if res.status_code in (200, 409):
                res.success()

    @task(4)
    def work_called_list(self):
        res = self.client.get(
            f"/api/v1/booths/{self.booth_id}/called-list",
            headers=self.headers,
            name="/api/v1/booths/[boothId]/called-list",
        )
        if res.status_code != 200:
            return
        for waiting in res.json().get("calledList", []):
            action = "entrance" if waiting["status"] == "CALLED" else "complete"
            # some visitors never show up; leave those to the sweeper
            if action == "entrance" and random.random() < 0.2:
                continue
            self.client.post(
                f"/api/v1/booths/{self.booth_id}/{action}/{waiting['waitingId']}",
                headers=self.headers,
                name=f"/api/v1/booths/[boothId]/{action}/[waitingId]",
            )


class FestivalVisitor(HttpUser):
    tasks = [VisitorTasks]
    host = ""  # 테스트 서버
    wait_time = between(1, 3)
    weight = 20


class BoothStaff(HttpUser):
    tasks = [StaffTasks]
    host = ""
    wait_time = between(2, 5)
    weight = 1
